from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends, File, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from .. import crud, models, schemas
from ..database import get_db
from ..deps import get_current_user, get_file_lifecycle
from ..errors import NotFoundError, UpstreamUnavailableError
from ..services import files as file_service
from ..services import storage
from ..services.files import FileLifecycle

router = APIRouter(tags=["files"])


async def _require_conversation(db: AsyncSession, user_id: str, conversation_id: UUID) -> models.Conversation:
    conversation = await crud.get_conversation(db, user_id, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation


async def _require_file(db: AsyncSession, user_id: str, file_id: UUID) -> models.FileAsset:
    record = await crud.get_file(db, user_id, file_id)
    if record is None:
        raise NotFoundError("File not found")
    return record


@router.post(
    "/conversations/{conversation_id}/files",
    response_model=schemas.FileUploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_file(
    conversation_id: UUID,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
    lifecycle: FileLifecycle = Depends(get_file_lifecycle),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    # type and size are known before the body is read into memory
    file_service.validate_upload(file.filename or "", file.size if file.size is not None else 1)
    data = await file.read()
    result = await lifecycle.upload(
        db,
        auth.user_id,
        conversation_id,
        filename=file.filename or "file",
        content_type=file.content_type,
        data=data,
    )
    return schemas.FileUploadResponse(
        file=file_service.serialize_metadata(result.record),
        deduplicated=result.deduplicated,
    )


@router.get("/conversations/{conversation_id}/files", response_model=schemas.FileListResponse)
async def list_conversation_files(
    conversation_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    records = await crud.list_conversation_files(db, auth.user_id, conversation_id)
    return schemas.FileListResponse(files=[file_service.serialize_metadata(f) for f in records])


@router.post("/conversations/{conversation_id}/files/{file_id}", status_code=status.HTTP_201_CREATED)
async def link_file(
    conversation_id: UUID,
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    await _require_file(db, auth.user_id, file_id)
    await crud.link_conversation_file(db, conversation_id, file_id)
    return {"ok": True}


@router.delete("/conversations/{conversation_id}/files/{file_id}")
async def unlink_file(
    conversation_id: UUID,
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    await _require_file(db, auth.user_id, file_id)
    deleted = await file_service.release_reference(db, auth.user_id, file_id, conversation_id=conversation_id)
    return {"ok": True, "deleted": deleted}


@router.get("/files", response_model=schemas.FileListResponse)
async def list_files(
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    records = await crud.list_user_files(db, auth.user_id)
    return schemas.FileListResponse(files=[file_service.serialize_metadata(f) for f in records])


@router.get("/files/{file_id}", response_model=schemas.FileMetadata)
async def get_file(
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    return file_service.serialize_metadata(await _require_file(db, auth.user_id, file_id))


@router.get("/files/{file_id}/download")
async def download_file(
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    record = await _require_file(db, auth.user_id, file_id)
    try:
        data = await storage.get_object(record.object_key)
    except storage.StorageError as err:
        raise UpstreamUnavailableError("File could not be read from storage") from err
    return Response(
        content=data,
        media_type=record.content_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(record.filename)}"},
    )


@router.get("/files/{file_id}/thumbnail")
async def get_thumbnail(
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    record = await _require_file(db, auth.user_id, file_id)
    if not record.thumbnail_key:
        raise NotFoundError("Thumbnail not available")
    try:
        data = await storage.get_object(record.thumbnail_key)
    except storage.StorageError as err:
        raise UpstreamUnavailableError("Thumbnail could not be read from storage") from err
    return Response(content=data, media_type=file_service.THUMBNAIL_CONTENT_TYPE)


@router.delete("/files/{file_id}")
async def delete_file(
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    await file_service.delete_file(db, auth.user_id, file_id)
    return {"ok": True}
