# assets.py
"""
Asset gallery endpoints.

Public:
    GET  /assets                    - public gallery
    GET  /assets/{id}               - one asset (counts a view)
    GET  /assets/{id}/formats       - stored formats
Authenticated:
    GET  /assets/mine               - the caller's own assets
    GET  /assets/{id}/download      - download one format (counts a download)
    POST /assets/from-meshy         - save a finished Meshy task as an asset
Admin:
    POST/PUT/DELETE /assets[/{id}]  - curate public assets
    /assets/admin/user-models/...   - review and publish user generations
"""
import logging
import math
import uuid
from typing import Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.responses import RedirectResponse
from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from threely import meshy, storage
from threely.auth import get_current_user, get_optional_user, require_admin
from threely.db import get_db
from threely.generation import CONTENT_TYPES, pending_generations
from threely.meshy import MeshyAPIError, TASK_SUCCEEDED
from threely.models import Asset, User
from threely.persistence import (
    AssetOwnershipError, AssetSaveError, format_file_size, is_proxy_url, proxy_url, save_task_as_user_asset,
)
from threely.schemas import AssetUpdateRequest, FromMeshyRequest, PublishAssetRequest, parse_uuid
from threely.settings import settings

log = logging.getLogger(__name__)

router = APIRouter(prefix="/assets", tags=["Assets"])


# ===================================================================
# Helpers
# ===================================================================

async def _get_active_asset(db: AsyncSession, asset_id: str) -> Asset:
    asset = await db.get(Asset, parse_uuid(asset_id, "Invalid asset id"))
    if asset is None or not asset.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Asset not found")
    return asset


def _ensure_can_view(asset: Asset, user: Optional[User]) -> None:
    if not asset.can_be_viewed_by(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not have access to this asset")


async def _commit(db: AsyncSession, action: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.error(f"Database error while trying to {action}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to {action}")


def _split_tags(tags: Optional[str]) -> Optional[List[str]]:
    if not tags:
        return None
    return [t for t in (part.strip() for part in tags.split(",")) if t]


async def _upload_model_files(uploads: Dict[str, Optional[UploadFile]], prefix: str, warnings: List[str]) -> dict:
    """Uploads each {format: file} given; a failed format is skipped with a warning."""
    stored = {}
    for fmt, upload in uploads.items():
        if upload is None:
            continue
        data = await upload.read()
        try:
            entry = await storage.upload_model_from_bytes(data, f"{prefix}-{upload.filename or 'model.' + fmt}")
        except Exception as e:
            log.warning(f"Admin upload of {fmt} failed: {e}")
            warnings.append(f"{fmt}: upload failed")
            continue
        entry.update(isProxy=False, originalMeshyUrl=None)
        stored[fmt] = entry
    return stored


async def _upload_preview(upload: Optional[UploadFile], prefix: str, warnings: List[str]) -> Optional[dict]:
    if upload is None:
        return None
    try:
        return await storage.upload_image_from_bytes(await upload.read(), f"{prefix}-{upload.filename}")
    except Exception as e:
        log.warning(f"Admin preview upload failed: {e}")
        warnings.append("previewImage: upload failed")
        return None


async def _fetch_stored_file(url: str) -> bytes:
    async with httpx.AsyncClient(timeout=settings.MESHY_DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.content


# ===================================================================
# Public & User Endpoints
# ===================================================================

@router.get("")
@router.get("/", include_in_schema=False)
async def list_public_assets(limit: int = Query(20, ge=1, le=100), db: AsyncSession = Depends(get_db)):
    assets = await Asset.find_public_assets(db, limit=limit)
    return {"success": True, "assets": [a.to_dict() for a in assets], "count": len(assets)}


@router.get("/mine")
async def list_my_assets(current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    assets = await Asset.find_user_assets(db, current_user.id)
    return {"success": True, "assets": [a.to_dict() for a in assets], "count": len(assets)}


@router.post("/from-meshy")
async def create_from_meshy(
    body: FromMeshyRequest,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Saves a Meshy task into the caller's collection. Model URLs may be
    supplied by the client; otherwise they are read from the task.
    """
    if not body.task_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Task ID is required")

    model_urls = dict(body.model_urls or {})
    if not model_urls and body.model_url:
        model_urls = {"glb": body.model_url}
    thumbnail_url = body.thumbnail_url

    if not model_urls:
        try:
            task = await meshy.get_task(body.task_id)
        except MeshyAPIError as e:
            raise HTTPException(status_code=500, detail=f"Failed to fetch task status: {e}")
        if task.get("status") != TASK_SUCCEEDED:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Model generation not completed yet")
        model_urls = task.get("model_urls") or {}
        thumbnail_url = thumbnail_url or task.get("thumbnail_url")

    if not model_urls.get("glb"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="GLB model URL not available")

    try:
        saved = await save_task_as_user_asset(
            db,
            current_user,
            body.task_id,
            model_urls,
            body,
            pending=pending_generations(request).get(body.task_id),
            thumbnail_url=thumbnail_url,
            source="from-meshy",
        )
    except AssetOwnershipError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except AssetSaveError as e:
        raise HTTPException(status_code=500, detail=f"Failed to save asset to your collection: {e}")
    except SQLAlchemyError as e:
        await db.rollback()
        log.error(f"Database error saving task {body.task_id}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to save asset to your collection: {e}")

    response.status_code = status.HTTP_201_CREATED if saved.created else status.HTTP_200_OK
    return {
        "success": True,
        "message": "Asset created from Meshy task" if saved.created else "Asset updated from Meshy task",
        "asset": saved.asset.to_dict(),
        "availableFormats": saved.formats.available_formats,
        "proxyFormats": saved.formats.proxy_formats,
    }


# ===================================================================
# Admin: User-Generated Models
# ===================================================================

def _published_source_ids():
    return select(Asset.source_user_asset_id).where(
        Asset.source_user_asset_id.is_not(None), Asset.is_active.is_(True)
    )


async def _owner_summaries(db: AsyncSession, user_ids) -> dict:
    ids = {uid for uid in user_ids if uid}
    if not ids:
        return {}
    result = await db.execute(select(User.id, User.username, User.email).where(User.id.in_(ids)))
    return {row.id: {"id": str(row.id), "username": row.username, "email": row.email} for row in result}


@router.get("/admin/user-models")
async def list_user_models(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    publish_status: str = Query("all", alias="status", pattern="^(all|published|unpublished)$"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Asset).where(Asset.is_user_generated.is_(True), Asset.is_active.is_(True))
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.where(
            or_(
                func.lower(Asset.name).like(pattern),
                func.lower(Asset.breed).like(pattern),
                func.lower(Asset.meshy_task_id).like(pattern),
            )
        )
    if publish_status == "published":
        query = query.where(Asset.id.in_(_published_source_ids()))
    elif publish_status == "unpublished":
        query = query.where(Asset.id.not_in(_published_source_ids()))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Asset.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    assets = list(result.scalars().all())

    published = set((await db.execute(_published_source_ids())).scalars().all())
    owners = await _owner_summaries(db, (a.user_id for a in assets))

    return {
        "success": True,
        "models": [
            {**a.to_dict(), "owner": owners.get(a.user_id), "isPublished": a.id in published}
            for a in assets
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@router.get("/admin/user-models/{asset_id}")
async def get_user_model(asset_id: str, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    asset = await _get_active_asset(db, asset_id)
    if not asset.is_user_generated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User model not found")

    owners = await _owner_summaries(db, [asset.user_id])
    copy_id = await db.scalar(
        select(Asset.id).where(Asset.source_user_asset_id == asset.id, Asset.is_active.is_(True))
    )
    return {
        "success": True,
        "model": {
            **asset.to_dict(),
            "owner": owners.get(asset.user_id),
            "isPublished": copy_id is not None,
            "publishedAssetId": str(copy_id) if copy_id else None,
        },
    }


@router.delete("/admin/user-models/{asset_id}")
async def delete_user_model(asset_id: str, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    asset = await _get_active_asset(db, asset_id)
    if not asset.is_user_generated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User model not found")
    asset.is_active = False
    await _commit(db, "delete user model")
    log.info(f"Admin {admin.username} deactivated user model {asset.id}")
    return {"success": True, "message": "User model deleted"}


@router.post("/admin/user-models/{asset_id}/toggle-public")
async def toggle_user_model_public(
    asset_id: str, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)
):
    asset = await _get_active_asset(db, asset_id)
    asset.is_public = not asset.is_public
    await _commit(db, "update asset visibility")
    return {"success": True, "isPublic": asset.is_public, "asset": asset.to_dict()}


@router.post("/admin/user-models/{asset_id}/publish", status_code=status.HTTP_201_CREATED)
async def publish_user_model(
    asset_id: str,
    body: Optional[PublishAssetRequest] = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Publishes a user generation to the homepage as a new public asset.
    Permanently stored files are copied into the published folder; proxy
    entries and oversized files are carried over unchanged.
    """
    options = body or PublishAssetRequest()
    source = await _get_active_asset(db, asset_id)
    if not source.is_user_generated:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only user-generated assets can be published")
    if await Asset.is_user_asset_published(db, source.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This asset is already published")

    warnings = []
    model_files = {}
    for fmt, entry in (source.model_files or {}).items():
        url = entry.get("url")
        if not url:
            continue
        if entry.get("isProxy") or is_proxy_url(url) or (entry.get("size") or 0) > settings.MAX_DIRECT_UPLOAD_BYTES:
            model_files[fmt] = dict(entry)
            continue
        try:
            copied = await storage.copy_from_url(url, f"published-{source.id}.{fmt}")
            copied.update(isProxy=False, originalMeshyUrl=entry.get("originalMeshyUrl"))
            model_files[fmt] = copied
        except Exception as e:
            log.warning(f"Publishing {source.id}: copying {fmt} failed, keeping original file: {e}")
            warnings.append(f"{fmt}: could not copy file, original link kept")
            model_files[fmt] = dict(entry)

    try:
        published = Asset(
            name=options.name or source.name,
            breed=options.breed or source.breed,
            icon=options.icon or source.icon,
            description=options.description or source.description,
            tags=options.tags or source.tags,
            polygons=source.polygons,
            topology=source.topology,
            texture=source.texture,
            symmetry=source.symmetry,
            pbr=source.pbr,
            model_files=model_files,
            available_formats=list(model_files),
            file_size=source.file_size,
            preview_image=source.preview_image,
            original_image=source.original_image,
            original_image_url=source.original_image_url,
            generated_from_image=source.generated_from_image,
            is_public=True,
            is_user_generated=False,
            category=options.category,
            created_by=str(admin.id),
            generation_metadata={
                **(source.generation_metadata or {}),
                "publishedBy": str(admin.id),
                "originalOwnerId": str(source.user_id) if source.user_id else None,
                "sourceMeshyTaskId": source.meshy_task_id,
            },
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    published.mark_as_published(source.id)

    db.add(published)
    await _commit(db, "publish asset")
    log.info(f"Admin {admin.username} published user model {source.id} as {published.id}")

    return {
        "success": True,
        "message": "Asset published to homepage",
        "asset": published.to_dict(),
        "warnings": warnings,
    }


# ===================================================================
# Admin: Curated Assets
# ===================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
@router.post("/", status_code=status.HTTP_201_CREATED, include_in_schema=False)
async def create_asset(
    name: str = Form(...),
    breed: Optional[str] = Form(None),
    icon: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    polygons: Optional[int] = Form(None),
    category: str = Form("public"),
    isPublic: bool = Form(True),
    modelFileGLB: Optional[UploadFile] = File(None),
    modelFileFBX: Optional[UploadFile] = File(None),
    modelFileOBJ: Optional[UploadFile] = File(None),
    modelFileUSDZ: Optional[UploadFile] = File(None),
    previewImage: Optional[UploadFile] = File(None),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Creates a curated public asset from uploaded model files. GLB is required."""
    uploads = {"glb": modelFileGLB, "fbx": modelFileFBX, "obj": modelFileOBJ, "usdz": modelFileUSDZ}
    if modelFileGLB is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="GLB model file is required")

    prefix = uuid.uuid4().hex[:12]
    warnings = []
    model_files = await _upload_model_files(uploads, prefix, warnings)
    if "glb" not in model_files:
        raise HTTPException(status_code=500, detail="Failed to upload GLB model file")
    total_size = sum(entry["size"] for entry in model_files.values())

    preview = await _upload_preview(previewImage, prefix, warnings)

    try:
        asset = Asset(
            name=name,
            breed=breed or "Mixed Breed",
            icon=icon or "🐕",
            description=description,
            tags=_split_tags(tags) or [],
            polygons=polygons or 30000,
            category=category,
            is_public=isPublic,
            model_files=model_files,
            available_formats=list(model_files),
            file_size=format_file_size(total_size),
            preview_image=preview,
            created_by=str(admin.id),
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    db.add(asset)
    await _commit(db, "create asset")
    return {"success": True, "message": "Asset created", "asset": asset.to_dict(), "warnings": warnings}


@router.get("/{asset_id}")
async def get_asset(
    asset_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    asset = await _get_active_asset(db, asset_id)
    _ensure_can_view(asset, current_user)
    asset.increment_views()
    await _commit(db, "record asset view")
    return {"success": True, "asset": asset.to_dict()}


@router.get("/{asset_id}/formats")
async def get_asset_formats(
    asset_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    asset = await _get_active_asset(db, asset_id)
    _ensure_can_view(asset, current_user)
    formats = {}
    for fmt in asset.available_formats or []:
        entry = asset.get_model_file(fmt)
        if entry:
            formats[fmt] = {
                "url": entry["url"],
                "size": entry.get("size", 0),
                "isProxy": bool(entry.get("isProxy")),
            }
    return {"success": True, "assetId": str(asset.id), "availableFormats": list(formats), "formats": formats}


@router.get("/{asset_id}/download")
async def download_asset(
    asset_id: str,
    format: str = "glb",
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Downloads one format of an asset. Proxy and Meshy-hosted files are
    redirected to the proxy endpoint; stored files are streamed.
    """
    fmt = format.lower()
    asset = await _get_active_asset(db, asset_id)
    _ensure_can_view(asset, current_user)

    entry = asset.get_model_file(fmt)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"Format {fmt} not available", "availableFormats": list(asset.available_formats or [])},
        )

    asset.increment_downloads()
    await _commit(db, "record asset download")

    url = entry["url"]
    if entry.get("isProxy") or is_proxy_url(url):
        return RedirectResponse(url)
    if asset.meshy_task_id and "meshy.ai" in url:
        return RedirectResponse(proxy_url(asset.meshy_task_id, fmt))

    try:
        data = await _fetch_stored_file(url)
    except httpx.HTTPError as e:
        log.warning(f"Streaming {url} failed, redirecting instead: {e}")
        return RedirectResponse(url)

    filename = f"{asset.name.replace(' ', '_')}.{fmt}"
    return Response(
        content=data,
        media_type=CONTENT_TYPES.get(fmt, "application/octet-stream"),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.put("/{asset_id}")
async def update_asset(
    asset_id: str,
    name: Optional[str] = Form(None),
    breed: Optional[str] = Form(None),
    icon: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    polygons: Optional[int] = Form(None),
    popularity: Optional[int] = Form(None),
    topology: Optional[str] = Form(None),
    texture: Optional[bool] = Form(None),
    symmetry: Optional[str] = Form(None),
    pbr: Optional[bool] = Form(None),
    category: Optional[str] = Form(None),
    isPublic: Optional[bool] = Form(None),
    isActive: Optional[bool] = Form(None),
    modelFileGLB: Optional[UploadFile] = File(None),
    modelFileFBX: Optional[UploadFile] = File(None),
    modelFileOBJ: Optional[UploadFile] = File(None),
    modelFileUSDZ: Optional[UploadFile] = File(None),
    previewImage: Optional[UploadFile] = File(None),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Updates an asset from the admin form. Only the fields sent are changed.
    Uploaded model files and preview image replace the stored ones, and the
    replaced Cloudinary files are deleted once the update is saved.
    """
    asset = await db.get(Asset, parse_uuid(asset_id, "Invalid asset id"))
    if asset is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Asset not found")

    try:
        changes = AssetUpdateRequest(
            name=name,
            breed=breed,
            icon=icon,
            description=description,
            tags=_split_tags(tags),
            polygons=polygons,
            popularity=popularity,
            topology=topology,
            texture=texture,
            symmetry=symmetry,
            pbr=pbr,
            category=category,
            is_public=isPublic,
            is_active=isActive,
        ).model_dump(exclude_none=True)
    except ValidationError as e:
        first = e.errors()[0]
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"{'.'.join(map(str, first['loc']))}: {first['msg']}"
        )

    try:
        for key, value in changes.items():
            setattr(asset, key, value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    prefix = uuid.uuid4().hex[:12]
    warnings = []
    replaced = []
    uploads = {"glb": modelFileGLB, "fbx": modelFileFBX, "obj": modelFileOBJ, "usdz": modelFileUSDZ}
    for fmt, entry in (await _upload_model_files(uploads, prefix, warnings)).items():
        old = (asset.model_files or {}).get(fmt) or {}
        if old.get("publicId") and not old.get("isProxy"):
            replaced.append((old["publicId"], "raw"))
        asset.add_format(fmt, entry)
        if fmt == "glb":
            # Re-mirrored from the new glb on flush.
            asset.model_file = None

    preview = await _upload_preview(previewImage, prefix, warnings)
    if preview is not None:
        if (asset.preview_image or {}).get("publicId"):
            replaced.append((asset.preview_image["publicId"], "image"))
        asset.preview_image = preview

    await _commit(db, "update asset")

    for public_id, resource_type in replaced:
        try:
            await storage.delete_file(public_id, resource_type)
        except Exception as e:
            log.warning(f"Could not delete replaced file {public_id}: {e}")
            warnings.append(f"{public_id}: old file not deleted")

    return {"success": True, "message": "Asset updated", "asset": asset.to_dict(), "warnings": warnings}


@router.delete("/{asset_id}")
async def delete_asset(asset_id: str, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    """Deactivates an asset. Stored files are kept so it can be restored."""
    asset = await _get_active_asset(db, asset_id)
    asset.is_active = False
    await _commit(db, "delete asset")
    log.info(f"Admin {admin.username} deactivated asset {asset.id}")
    return {"success": True, "message": "Asset deleted"}
