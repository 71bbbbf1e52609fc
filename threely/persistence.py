# persistence.py
"""
Stores the result files of a finished Meshy task.

For every format Meshy produced, the file is downloaded and re-hosted on
Cloudinary. Files above `MAX_DIRECT_UPLOAD_BYTES`, and files whose download
or upload fails, are recorded as proxy entries instead: a same-origin URL
(`/api/proxyModel/<task>?format=<fmt>`) that streams the file from Meshy on
demand. Only a missing GLB makes the whole save fail.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from threely import meshy, storage
from threely.models import Asset, MODEL_FORMATS, User
from threely.schemas import SaveAssetRequest
from threely.settings import settings

log = logging.getLogger(__name__)

DEFAULT_ASSET_NAME = "Generated Dog Model"
DEFAULT_TAGS = ["generated", "meshy", "ai"]


class AssetSaveError(Exception):
    """The mandatory GLB file could not be resolved to any URL."""


class AssetOwnershipError(Exception):
    """Another user already owns the asset for this task."""


@dataclass
class PersistedFormats:
    model_files: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    proxy_formats: List[str] = field(default_factory=list)
    dropped_formats: List[str] = field(default_factory=list)
    total_size: int = 0

    @property
    def available_formats(self) -> List[str]:
        return list(self.model_files)

    @property
    def permanent_storage(self) -> bool:
        return bool(self.model_files) and not self.proxy_formats


@dataclass
class SavedAsset:
    asset: Asset
    formats: PersistedFormats
    has_original_image: bool
    created: bool


def proxy_url(task_id: str, fmt: str) -> str:
    return f"/api/proxyModel/{task_id}?format={fmt}"


def is_proxy_url(url: Optional[str]) -> bool:
    return bool(url) and url.startswith("/api/proxyModel/")


def format_file_size(size: int) -> str:
    return f"{size / (1024 * 1024):.1f} MB"


def _proxy_entry(task_id: str, fmt: str, source_url: str, size: int = 0) -> Dict[str, Any]:
    return {
        "filename": f"{task_id}.{fmt}",
        "url": proxy_url(task_id, fmt),
        "publicId": f"meshy-proxy-{task_id}-{fmt}",
        "size": size,
        "isProxy": True,
        "originalMeshyUrl": source_url,
    }


def _can_proxy(url: str) -> bool:
    return url.startswith(("http://", "https://"))


async def persist_model_formats(task_id: str, model_urls: Optional[Dict[str, str]]) -> PersistedFormats:
    """Downloads and re-hosts each format in turn, degrading to proxy entries."""
    result = PersistedFormats()

    for fmt in MODEL_FORMATS:
        source_url = (model_urls or {}).get(fmt)
        if not source_url:
            continue
        if not _can_proxy(source_url):
            log.error(f"Task {task_id}: {fmt} source URL is not fetchable, dropping format: {source_url!r}")
            result.dropped_formats.append(fmt)
            continue

        try:
            data = await meshy.download_file(source_url, timeout=settings.MESHY_DOWNLOAD_TIMEOUT)
            size = len(data)
            if size > settings.MAX_DIRECT_UPLOAD_BYTES:
                log.info(f"Task {task_id}: {fmt} is {format_file_size(size)}, serving through proxy")
                entry = _proxy_entry(task_id, fmt, source_url, size)
            else:
                entry = await storage.upload_model_from_bytes(data, f"{task_id}.{fmt}")
                entry.update(isProxy=False, originalMeshyUrl=source_url)
        except Exception as e:
            log.warning(f"Task {task_id}: storing {fmt} failed, falling back to proxy URL: {e}")
            entry = _proxy_entry(task_id, fmt, source_url)

        result.model_files[fmt] = entry
        result.total_size += entry.get("size") or 0
        if entry["isProxy"]:
            result.proxy_formats.append(fmt)

    return result


async def _store_original_image(task_id: str, pending: Optional[dict]) -> Optional[Dict[str, Any]]:
    data_uri = (pending or {}).get("originalImage")
    if not data_uri:
        return None
    try:
        return await storage.upload_original_image_from_base64(data_uri, task_id)
    except Exception as e:
        log.warning(f"Task {task_id}: original image upload failed, continuing without it: {e}")
        return None


async def save_task_as_user_asset(
    db: AsyncSession,
    user: User,
    task_id: str,
    model_urls: Optional[Dict[str, str]],
    options: SaveAssetRequest,
    *,
    pending: Optional[dict] = None,
    thumbnail_url: Optional[str] = None,
    source: str = "saveAsset",
) -> SavedAsset:
    """
    Persists every format of a finished task and records it as a private
    asset of `user`. Saving the same task again refreshes that asset, and
    restores it if it had been deleted.

    Raises:
        AssetSaveError: the GLB could not be stored or proxied.
        AssetOwnershipError: the task's asset belongs to someone else.
    """
    existing = await Asset.find_by_meshy_task(db, task_id)
    if existing is not None and not existing.is_owned_by(user):
        raise AssetOwnershipError(f"Task {task_id} is already saved by another user")

    original_image = await _store_original_image(task_id, pending)
    formats = await persist_model_formats(task_id, model_urls)
    if "glb" not in formats.model_files:
        raise AssetSaveError("GLB model could not be stored or proxied")

    params = (pending or {}).get("parameters") or {}
    topology = options.topology or params.get("topology") or "triangle"
    fields = {
        "name": options.name or DEFAULT_ASSET_NAME,
        "breed": options.breed or "Mixed Breed",
        "icon": options.icon or "🐕",
        "description": options.description or "AI-generated 3D model created from an uploaded photo",
        "tags": options.tags or list(DEFAULT_TAGS),
        "polygons": options.polygons or params.get("targetPolycount") or 30000,
        "topology": topology,
        "texture": options.texture if options.texture is not None else params.get("shouldTexture", True),
        "symmetry": options.symmetry or params.get("symmetryMode") or "auto",
        "pbr": options.pbr if options.pbr is not None else params.get("enablePBR", False),
        "model_files": formats.model_files,
        "available_formats": formats.available_formats,
        "file_size": format_file_size(formats.total_size),
        "meshy_task_id": task_id,
        "generated_from_image": True,
        "generation_metadata": {
            "source": source,
            "meshyTaskId": task_id,
            "autoSaved": options.auto_saved,
            "parameters": params,
            "proxyFormats": formats.proxy_formats,
            "droppedFormats": formats.dropped_formats,
            "permanentStorage": formats.permanent_storage,
            "pendingCreatedAt": (pending or {}).get("createdAt"),
        },
    }
    if original_image:
        fields["original_image"] = original_image
        fields["original_image_url"] = original_image["url"]
    if thumbnail_url:
        fields["preview_image"] = {"filename": f"{task_id}-preview.png", "url": thumbnail_url, "publicId": None, "size": 0}

    if existing is not None:
        # Legacy entry must follow the refreshed glb.
        existing.model_file = None
        for key, value in fields.items():
            setattr(existing, key, value)
        if not existing.is_active:
            log.info(f"Task {task_id}: reactivating deleted asset {existing.id}")
            existing.is_active = True
        asset, created = existing, False
    else:
        asset, created = Asset.create_user_asset(user, **fields), True
        db.add(asset)

    await db.commit()
    log.info(
        f"Task {task_id} saved as asset {asset.id} for user {user.username} "
        f"(formats={formats.available_formats}, proxied={formats.proxy_formats})"
    )
    return SavedAsset(asset=asset, formats=formats, has_original_image=bool(original_image), created=created)
