import mimetypes

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from container import Container
from database import get_async_db
from dependencies import get_services, raise_http
from errors import MediaPipelineError, PathSafetyError, StorageError
from models import Media, User
from schemas.media import MediaList, MediaRead, MediaRemoved, UploadQueued

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["media"])


@router.post(
    "/users/{user_id}/media/{profile}",
    response_model=MediaRead | UploadQueued,
    status_code=201,
    responses={202: {"model": UploadQueued}},
)
def upload_media(
    user_id: int,
    profile: str,
    response: Response,
    file: UploadFile = File(...),
    services: Container = Depends(get_services),
):
    try:
        result = services.uploads.upload(
            file.file, user_id, profile, original_name=file.filename, declared_mime=file.content_type
        )
    except MediaPipelineError as exc:
        raise raise_http(exc) from exc

    if result.media is None:
        response.status_code = 202
        return UploadQueued(status=result.status, correlation_id=result.correlation_id)
    return MediaRead.model_validate(result.media, from_attributes=True)


@router.delete("/users/{user_id}/media/{profile}", response_model=MediaRemoved)
def remove_media(user_id: int, profile: str, services: Container = Depends(get_services)):
    try:
        removed = services.uploads.remove(user_id, profile)
    except MediaPipelineError as exc:
        raise raise_http(exc) from exc
    return MediaRemoved(removed_ids=removed)


@router.get("/users/{user_id}/media", response_model=MediaList)
async def list_media(
    user_id: int,
    collection: str | None = Query(None, description="Collection filter, e.g. 'avatar'"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_async_db),
):
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    stat = select(Media).where(
        Media.model_type == User.owner_type,
        Media.model_id == user_id,
        Media.superseded_at.is_(None),
    )
    if collection:
        stat = stat.where(Media.collection_name == collection)

    total = (await db.execute(select(func.count()).select_from(stat.subquery()))).scalar_one()
    stat = stat.order_by(Media.id.asc()).limit(limit).offset(offset)
    items = (await db.execute(stat)).scalars().all()
    return {
        "items": [MediaRead.model_validate(m, from_attributes=True) for m in items],
        "total": total,
    }


@router.get("/files/{path:path}")
def serve_file(path: str, services: Container = Depends(get_services)):
    try:
        key = services.resolver.sanitize(path)
        data = services.disks.get(services.settings.storage.default_disk).read(key)
    except (PathSafetyError, FileNotFoundError):
        raise HTTPException(status_code=404, detail="File not found")
    except StorageError as exc:
        logger.error("media_serve_failed", error=type(exc).__name__)
        raise raise_http(exc) from exc

    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type, headers={"X-Content-Type-Options": "nosniff"})
