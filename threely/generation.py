# generation.py
"""
Generation endpoints.

1.  POST /generateModel      - start a Meshy image-to-3D task from a photo
2.  GET  /getModel/{task_id} - relay the Meshy task as-is
3.  GET  /status/{task_id}   - same, polled by the client while generating
4.  GET  /proxyModel/{id}    - stream one result file from Meshy
5.  POST /saveAsset/{id}     - re-host the results and save a private asset
"""
import base64
import logging
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, Response, UploadFile, status
from PIL import Image, UnidentifiedImageError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from threely import meshy
from threely.auth import get_current_user, get_optional_user
from threely.db import get_db
from threely.meshy import MeshyAPIError, TASK_SUCCEEDED
from threely.models import User
from threely.persistence import AssetOwnershipError, AssetSaveError, save_task_as_user_asset
from threely.schemas import SaveAssetRequest
from threely.settings import settings

log = logging.getLogger(__name__)

router = APIRouter(tags=["Generation"])

TOPOLOGIES = ("triangle", "quad")
SYMMETRY_MODES = ("off", "auto", "on")
MIN_POLYCOUNT = 100
MAX_POLYCOUNT = 300000
DEFAULT_POLYCOUNT = 30000

CONTENT_TYPES = {
    "glb": "model/gltf-binary",
    "gltf": "model/gltf+json",
    "usdz": "model/vnd.usdz+zip",
}


# ===================================================================
# Helpers
# ===================================================================

def pending_generations(request: Request) -> Dict[str, dict]:
    """In-process map of task id -> {originalImage, parameters, createdAt}."""
    store = getattr(request.app.state, "pending_generations", None)
    if store is None:
        store = request.app.state.pending_generations = {}
    return store


def prune_pending_generations(store: Dict[str, dict], now: Optional[datetime] = None) -> int:
    """Forgets unsaved generations older than PENDING_GENERATION_TTL_HOURS."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=settings.PENDING_GENERATION_TTL_HOURS)
    stale = []
    for task_id, entry in store.items():
        try:
            created = datetime.fromisoformat(entry.get("createdAt") or "")
        except ValueError:
            stale.append(task_id)
            continue
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        if created < cutoff:
            stale.append(task_id)

    for task_id in stale:
        del store[task_id]
    if stale:
        log.info(f"Dropped {len(stale)} unsaved generation(s) older than {settings.PENDING_GENERATION_TTL_HOURS}h")
    return len(stale)


def normalize_generation_params(
    topology: Optional[str],
    should_texture: Optional[str],
    enable_pbr: Optional[str],
    symmetry_mode: Optional[str],
    target_polycount: Optional[str],
) -> dict:
    """Form values as sent by the browser, coerced to what Meshy accepts."""
    try:
        polycount = int(target_polycount)
    except (TypeError, ValueError):
        polycount = DEFAULT_POLYCOUNT
    if not MIN_POLYCOUNT <= polycount <= MAX_POLYCOUNT:
        polycount = DEFAULT_POLYCOUNT

    return {
        "topology": topology if topology in TOPOLOGIES else "triangle",
        "shouldTexture": should_texture == "true",
        "enablePBR": enable_pbr == "true",
        "symmetryMode": symmetry_mode if symmetry_mode in SYMMETRY_MODES else "auto",
        "targetPolycount": polycount,
    }


def image_to_data_uri(data: bytes) -> str:
    """Validates the upload with Pillow and encodes it for the Meshy API."""
    try:
        with Image.open(BytesIO(data)) as img:
            img_format = img.format
            img.verify()
    except (UnidentifiedImageError, OSError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is not a valid image")

    mime = Image.MIME.get(img_format, "image/png")
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


async def _fetch_task(task_id: str) -> dict:
    try:
        return await meshy.get_task(task_id)
    except MeshyAPIError as e:
        log.error(f"Failed to fetch Meshy task {task_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch task status: {e}")


# ===================================================================
# API Endpoints
# ===================================================================

@router.post("/generateModel")
async def generate_model(
    request: Request,
    image: Optional[UploadFile] = File(None),
    topology: Optional[str] = Form(None),
    shouldTexture: Optional[str] = Form(None),
    enablePBR: Optional[str] = Form(None),
    symmetryMode: Optional[str] = Form(None),
    targetPolycount: Optional[str] = Form(None),
    current_user: Optional[User] = Depends(get_optional_user),
):
    """Starts a generation. The client then polls /status/{taskId}."""
    if image is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No image file provided")

    data = await image.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No image file provided")
    if len(data) > settings.MAX_IMAGE_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image too large (max {settings.MAX_IMAGE_UPLOAD_BYTES // (1024 * 1024)}MB).",
        )

    data_uri = image_to_data_uri(data)
    params = normalize_generation_params(topology, shouldTexture, enablePBR, symmetryMode, targetPolycount)

    try:
        task_id = await meshy.create_image_to_3d_task(
            data_uri,
            topology=params["topology"],
            target_polycount=params["targetPolycount"],
            symmetry_mode=params["symmetryMode"],
            should_texture=params["shouldTexture"],
            enable_pbr=params["enablePBR"],
        )
    except MeshyAPIError as e:
        log.error(f"Failed to start generation: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start model generation: {e}")

    store = pending_generations(request)
    prune_pending_generations(store)
    store[task_id] = {
        "originalImage": data_uri,
        "parameters": params,
        "createdAt": datetime.now(timezone.utc).isoformat(),
        "userId": str(current_user.id) if current_user else None,
    }
    log.info(f"Generation started: task {task_id} params={params}")
    return {"taskId": task_id, "modelUrls": None}


@router.get("/getModel/{task_id}")
async def get_model(task_id: str):
    return await _fetch_task(task_id)


@router.get("/status/{task_id}")
async def get_status(task_id: str):
    return await _fetch_task(task_id)


@router.get("/proxyModel/{task_id}")
async def proxy_model(task_id: str, format: str = "glb"):
    """Streams a finished model file from Meshy through our origin."""
    fmt = format.lower()
    task = await _fetch_task(task_id)

    if task.get("status") != TASK_SUCCEEDED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Model is not ready yet")
    model_urls = task.get("model_urls") or {}
    if not model_urls:
        raise HTTPException(status_code=500, detail="No model URLs available for this task")
    source_url = model_urls.get(fmt)
    if not source_url:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Format {fmt} not available")

    try:
        data = await meshy.download_file(source_url)
    except MeshyAPIError as e:
        log.error(f"Proxy download of {fmt} for task {task_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to fetch model file")

    return Response(
        content=data,
        media_type=CONTENT_TYPES.get(fmt, "application/octet-stream"),
        headers={
            "Content-Disposition": f'attachment; filename="dalma-model.{fmt}"',
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )


@router.post("/saveAsset/{task_id}")
async def save_asset(
    task_id: str,
    request: Request,
    response: Response,
    body: Optional[SaveAssetRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Saves a finished generation into the caller's private collection.
    Formats that cannot be re-hosted are kept as proxy links.
    """
    options = body or SaveAssetRequest()
    task = await _fetch_task(task_id)

    if task.get("status") != TASK_SUCCEEDED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Model generation not completed yet")
    model_urls = task.get("model_urls") or {}
    if not model_urls.get("glb"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="GLB model URL not available")

    store = pending_generations(request)
    try:
        saved = await save_task_as_user_asset(
            db,
            current_user,
            task_id,
            model_urls,
            options,
            pending=store.get(task_id),
            thumbnail_url=task.get("thumbnail_url"),
        )
    except AssetOwnershipError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except AssetSaveError as e:
        raise HTTPException(status_code=500, detail=f"Failed to save asset to your collection: {e}")
    except SQLAlchemyError as e:
        await db.rollback()
        log.error(f"Database error saving task {task_id}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to save asset to your collection: {e}")

    store.pop(task_id, None)
    response.status_code = status.HTTP_201_CREATED if saved.created else status.HTTP_200_OK
    return {
        "success": True,
        "message": "Asset saved to your private collection",
        "asset": saved.asset.to_dict(),
        "isPrivate": True,
        "owner": current_user.username,
        "availableFormats": saved.formats.available_formats,
        "proxyFormats": saved.formats.proxy_formats,
        "hasOriginalImage": saved.has_original_image,
        "permanentStorage": saved.formats.permanent_storage,
    }
