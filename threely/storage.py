# storage.py
"""
Cloudinary storage adapter.

Wraps the synchronous Cloudinary SDK so the async handlers can upload,
copy, inspect and delete files without blocking the event loop. Every call
returns plain dicts shaped like the `modelFiles` / image entries stored
on an `Asset`: {filename, url, publicId, size}.
"""
import asyncio
import base64
import binascii
import logging
import re
import uuid
from io import BytesIO
from typing import Any, Dict, Optional

import cloudinary
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
import cloudinary.utils

from threely.settings import settings

log = logging.getLogger(__name__)

MODELS_FOLDER = "dalma-ai/models"
IMAGES_FOLDER = "dalma-ai/images"
ORIGINALS_FOLDER = "dalma-ai/originals"
PUBLISHED_FOLDER = "dalma-ai/published"

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)

# --- Cloudinary Configuration ---
cloudinary.config(
    cloud_name=settings.CLOUDINARY_CLOUD_NAME,
    api_key=settings.CLOUDINARY_API_KEY,
    api_secret=settings.CLOUDINARY_API_SECRET,
    secure=True,  # Always use HTTPS URLs
)
if not settings.CLOUDINARY_CLOUD_NAME:
    log.warning("CLOUDINARY_CLOUD_NAME not set. Uploads will fail and fall back to proxy URLs.")


class StorageError(Exception):
    """Cloudinary returned something we cannot use."""


def is_configured() -> bool:
    return bool(settings.CLOUDINARY_CLOUD_NAME and settings.CLOUDINARY_API_KEY)


def _secure_url(upload_result: Dict[str, Any], resource_type: str) -> str:
    """`secure_url` from an upload result, built from the public id if missing."""
    secure_url = upload_result.get("secure_url")
    if secure_url:
        return secure_url

    public_id = upload_result.get("public_id")
    if not public_id:
        raise StorageError("Cloudinary upload returned neither a URL nor a public_id")

    log.warning(f"Cloudinary response missing 'secure_url' for {public_id}. Constructing URL.")
    return cloudinary.utils.cloudinary_url(
        public_id,
        resource_type=upload_result.get("resource_type", resource_type),
        version=upload_result.get("version"),
        secure=True,
    )[0]


async def _upload(source, *, folder: str, public_id: str, resource_type: str, filename: str) -> Dict[str, Any]:
    def sync_upload(upload_data):
        return cloudinary.uploader.upload(
            upload_data,
            folder=folder,
            public_id=public_id,
            resource_type=resource_type,
            overwrite=True,
            unique_filename=False,
            invalidate=True,
        )

    upload_result = await asyncio.to_thread(sync_upload, source)
    url = _secure_url(upload_result, resource_type)
    log.info(f"File uploaded to Cloudinary: {url}")
    return {
        "filename": filename,
        "url": url,
        "publicId": upload_result.get("public_id", f"{folder}/{public_id}"),
        "size": upload_result.get("bytes", 0),
    }


async def upload_model_from_bytes(data: bytes, filename: str, folder: str = MODELS_FOLDER) -> Dict[str, Any]:
    """Uploads a 3D model file (glb/fbx/obj/usdz) as a raw resource."""
    # Raw resources keep their extension as part of the public id.
    entry = await _upload(
        BytesIO(data), folder=folder, public_id=filename, resource_type="raw", filename=filename
    )
    entry["size"] = entry["size"] or len(data)
    return entry


async def upload_image_from_bytes(data: bytes, filename: str, folder: str = IMAGES_FOLDER) -> Dict[str, Any]:
    stem = filename.rsplit(".", 1)[0] or str(uuid.uuid4())
    entry = await _upload(
        BytesIO(data), folder=folder, public_id=stem, resource_type="image", filename=filename
    )
    entry["size"] = entry["size"] or len(data)
    return entry


async def upload_original_image_from_base64(data_uri: str, task_id: str) -> Dict[str, Any]:
    """Uploads the photo a generation started from (a base64 data URI)."""
    match = _DATA_URI_RE.match(data_uri or "")
    if not match:
        raise StorageError("Original image is not a base64 data URI")
    try:
        raw = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise StorageError(f"Original image is not valid base64: {e}")

    extension = match.group("mime").split("/")[-1].replace("jpeg", "jpg")
    return await upload_image_from_bytes(raw, f"original-{task_id}.{extension}", folder=ORIGINALS_FOLDER)


async def copy_from_url(url: str, filename: str, folder: str = PUBLISHED_FOLDER, resource_type: str = "raw") -> Dict[str, Any]:
    """Lets Cloudinary fetch `url` itself and store it under `folder`."""
    public_id = filename if resource_type == "raw" else filename.rsplit(".", 1)[0]
    return await _upload(url, folder=folder, public_id=public_id, resource_type=resource_type, filename=filename)


async def delete_file(public_id: str, resource_type: str = "raw") -> bool:
    """Destroys a stored file. Returns True when Cloudinary reports it gone."""
    result = await asyncio.to_thread(
        cloudinary.uploader.destroy, public_id, resource_type=resource_type, invalidate=True
    )
    ok = result.get("result") in ("ok", "not found")
    if not ok:
        log.warning(f"Cloudinary destroy for {public_id} returned {result}")
    return ok


async def get_file_info(public_id: str, resource_type: str = "raw") -> Optional[Dict[str, Any]]:
    """Metadata of a stored file, or None when Cloudinary does not know it."""
    try:
        info = await asyncio.to_thread(cloudinary.api.resource, public_id, resource_type=resource_type)
    except cloudinary.exceptions.NotFound:
        return None
    return {
        "publicId": info.get("public_id"),
        "url": info.get("secure_url"),
        "size": info.get("bytes", 0),
        "format": info.get("format"),
        "createdAt": info.get("created_at"),
    }
