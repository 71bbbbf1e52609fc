# meshy.py
"""
Thin async client for the Meshy image-to-3D API.

Only three calls are needed: start a task, read a task, and download one
of the finished model files. Errors are raised as `MeshyAPIError`; the
routers decide which HTTP status the caller sees.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from threely.settings import settings

logger = logging.getLogger(__name__)

TASK_SUCCEEDED = "SUCCEEDED"
TASK_FAILED = "FAILED"


class MeshyAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _headers() -> Dict[str, str]:
    if not settings.MESHY_API_KEY:
        raise MeshyAPIError("MESHY_API_KEY not configured")
    return {"Authorization": f"Bearer {settings.MESHY_API_KEY}"}


def _client(timeout: float, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, **kwargs)


async def _make_request(method: str, path: str, **kwargs) -> Any:
    """
    Sends one request to the Meshy API and returns the decoded JSON body.

    Raises:
        MeshyAPIError: on transport errors, non-2xx and non-JSON responses.
    """
    url = f"{settings.MESHY_API_BASE.rstrip('/')}{path}"
    async with _client(settings.MESHY_HTTP_TIMEOUT) as client:
        try:
            response = await client.request(method, url, headers=_headers(), **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Meshy {method} {path} returned {e.response.status_code}: {e.response.text[:500]}")
            raise MeshyAPIError(
                f"Meshy API error {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.RequestError as e:
            logger.warning(f"Meshy {method} {path} failed: {e}")
            raise MeshyAPIError(f"Meshy API request failed: {e}") from e
        except ValueError as e:
            raise MeshyAPIError(f"Meshy returned a non-JSON response for {method} {path}") from e


async def create_image_to_3d_task(
    image_data_uri: str,
    *,
    topology: str = "triangle",
    target_polycount: int = 30000,
    symmetry_mode: str = "auto",
    should_texture: bool = True,
    enable_pbr: bool = False,
) -> str:
    """Starts an image-to-3D generation and returns Meshy's task id."""
    payload = {
        "image_url": image_data_uri,
        "ai_model": "meshy-4",
        "topology": topology,
        "target_polycount": target_polycount,
        "should_remesh": True,
        "enable_pbr": enable_pbr,
        "should_texture": should_texture,
        "symmetry_mode": symmetry_mode,
        "prompt": "dog",
    }
    result = await _make_request("POST", "/image-to-3d", json=payload)
    task_id = result.get("result") if isinstance(result, dict) else result
    if not task_id:
        raise MeshyAPIError("Meshy did not return a task id")
    logger.info(f"Meshy task created: {task_id}")
    return task_id


async def get_task(task_id: str) -> Dict[str, Any]:
    """Current state of a task: status, progress, model_urls, thumbnail_url..."""
    return await _make_request("GET", f"/image-to-3d/{task_id}")


async def download_file(url: str, timeout: Optional[float] = None) -> bytes:
    """Downloads a finished model file (Meshy asset URLs are pre-signed)."""
    async with _client(timeout or settings.MESHY_DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MeshyAPIError(
                f"Download failed with status {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.RequestError as e:
            raise MeshyAPIError(f"Download failed: {e}") from e
    return response.content
