import asyncio
import logging
import os
import zlib
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional, Protocol, Sequence
from uuid import UUID

from PIL import Image, ImageOps, UnidentifiedImageError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import crud, models
from ..errors import NotFoundError, UpstreamUnavailableError, ValidationError
from ..schemas import FileMetadata
from . import storage
from .chunking import chunk_text
from .extraction import ExtractorRegistry, default_registry, extension_of
from .tasks import BackgroundTaskPool

ALLOWED_EXTENSIONS = {
    "txt", "md", "pdf", "docx", "xlsx", "xls", "csv", "json", "xml", "html", "htm", "rtf",
    "js", "ts", "jsx", "tsx", "py", "java", "c", "cpp", "h", "go", "rs", "rb", "php", "sh",
    "bash", "yaml", "yml", "toml", "sql", "css", "scss", "log", "env", "ini", "cfg", "conf",
    "png", "jpg", "jpeg", "gif", "webp",
}

MAX_FILE_SIZE_BYTES = int(os.getenv("UPLOAD_MAX_BYTES", str(25 * 1024 * 1024)))
THUMBNAIL_MAX_DIMENSION = int(os.getenv("THUMBNAIL_MAX_SIZE", "512"))
THUMBNAIL_CONTENT_TYPE = "image/jpeg"
PREVIEW_MAX_CHARS = 200_000
EXTRACTION_WAIT_SECONDS = float(os.getenv("EXTRACTION_WAIT_SECONDS", "30"))
EXTRACTION_POLL_SECONDS = float(os.getenv("EXTRACTION_POLL_SECONDS", "1"))


logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


@dataclass
class UploadResult:
    record: models.FileAsset
    deduplicated: bool = False


def validate_upload(filename: str, size: int) -> None:
    ext = extension_of(filename)
    if ext not in ALLOWED_EXTENSIONS:
        supported = ", ".join(sorted(ALLOWED_EXTENSIONS))
        raise ValidationError(f'File type ".{ext}" is not supported. Supported types: {supported}')
    if size <= 0:
        raise ValidationError("File is empty")
    if size > MAX_FILE_SIZE_BYTES:
        raise ValidationError("File too large")


def content_hash(data: bytes) -> str:
    return format(zlib.crc32(data) & 0xFFFFFFFF, "08x")


def _generate_thumbnail(data: bytes) -> Optional[bytes]:
    try:
        with Image.open(BytesIO(data)) as image:
            image = ImageOps.exif_transpose(image)
            image.thumbnail((THUMBNAIL_MAX_DIMENSION, THUMBNAIL_MAX_DIMENSION))
            if image.mode != "RGB":
                image = image.convert("RGB")
            output = BytesIO()
            image.save(output, format="JPEG", optimize=True, quality=80)
            return output.getvalue()
    except UnidentifiedImageError:
        return None
    except Exception as exc:
        logger.warning("Failed to generate thumbnail: %s", exc)
        return None


def _object_keys(record: models.FileAsset) -> List[str]:
    return [k for k in (record.object_key, record.extracted_text_key, record.thumbnail_key) if k]


def serialize_metadata(record: models.FileAsset) -> FileMetadata:
    return FileMetadata(
        id=record.id,
        filename=record.filename,
        content_type=record.content_type,
        size=record.size,
        extraction_status=record.extraction_status,
        has_thumbnail=bool(record.thumbnail_key),
        created_at=record.created_at,
    )


class FileLifecycle:
    """Upload with per-owner dedup, then extraction and embedding off the request path."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        pool: BackgroundTaskPool,
        embedder: Embedder,
        extractors: Optional[ExtractorRegistry] = None,
    ):
        self._session_factory = session_factory
        self._pool = pool
        self._embedder = embedder
        self._extractors = extractors or default_registry()

    async def upload(
        self,
        db: AsyncSession,
        user_id: str,
        conversation_id: UUID,
        filename: str,
        content_type: Optional[str],
        data: bytes,
    ) -> UploadResult:
        validate_upload(filename, len(data))
        digest = content_hash(data)
        content_type = content_type or "application/octet-stream"

        existing = await crud.find_file_by_hash(db, user_id, digest)
        if existing is not None:
            await crud.link_conversation_file(db, conversation_id, existing.id)
            return UploadResult(record=existing, deduplicated=True)

        record = models.FileAsset(
            user_id=user_id,
            filename=filename,
            content_type=content_type,
            size=len(data),
            content_hash=digest,
            object_key=storage.generate_object_key(user_id),
            extraction_status="pending",
        )
        try:
            record = await crud.create_file(db, record)
        except IntegrityError:
            # same bytes uploaded concurrently; the other request's row wins
            await db.rollback()
            existing = await crud.find_file_by_hash(db, user_id, digest)
            if existing is None:
                raise
            await crud.link_conversation_file(db, conversation_id, existing.id)
            return UploadResult(record=existing, deduplicated=True)

        try:
            await storage.put_object(record.object_key, data, content_type)
        except Exception as exc:
            logger.error("Upload of %s to object store failed: %s", record.object_key, exc)
            await crud.delete_file_record(db, record)
            raise UpstreamUnavailableError("File storage is unavailable") from exc

        await crud.link_conversation_file(db, conversation_id, record.id)
        self._pool.spawn(
            self.process(record.id, user_id, record.object_key, data, filename, content_type),
            name=f"process-file-{record.id}",
        )
        return UploadResult(record=record)

    async def process(
        self,
        file_id: UUID,
        user_id: str,
        object_key: str,
        data: bytes,
        filename: str,
        content_type: str,
    ) -> None:
        async with self._session_factory() as db:
            if content_type.startswith("image/"):
                await self._store_thumbnail(db, file_id, object_key, data)
            try:
                if not self._extractors.can_extract(content_type, filename):
                    await crud.update_file(db, file_id, extraction_status="failed")
                    return
                text = await asyncio.to_thread(self._extractors.extract, data, content_type, filename)
                if not text.strip():
                    await crud.update_file(db, file_id, extraction_status="failed")
                    return
                text_key = storage.sibling_key(object_key, "extracted.txt")
                await storage.put_object(text_key, text.encode("utf-8"), "text/plain; charset=utf-8")
                await crud.update_file(
                    db,
                    file_id,
                    extraction_status="done",
                    extracted_text_key=text_key,
                    text_preview=text[:PREVIEW_MAX_CHARS],
                )
            except Exception:
                logger.exception("File extraction failed for %s", file_id)
                await db.rollback()
                await crud.update_file(db, file_id, extraction_status="failed")
                return

            await self._embed_chunks(db, user_id, file_id, text)

    async def _store_thumbnail(self, db: AsyncSession, file_id: UUID, object_key: str, data: bytes) -> None:
        thumb = await asyncio.to_thread(_generate_thumbnail, data)
        if not thumb:
            return
        thumb_key = storage.sibling_key(object_key, "thumbnail.jpg")
        try:
            await storage.put_object(thumb_key, thumb, THUMBNAIL_CONTENT_TYPE)
        except Exception as exc:
            logger.warning("Failed to upload thumbnail %s: %s", thumb_key, exc)
            return
        await crud.update_file(db, file_id, thumbnail_key=thumb_key)

    async def _embed_chunks(self, db: AsyncSession, user_id: str, file_id: UUID, text: str) -> None:
        items = []
        for chunk in chunk_text(text):
            try:
                vector = await self._embedder.embed(chunk.content)
            except Exception as exc:
                logger.warning("Embedding chunk %d of file %s failed: %s", chunk.index, file_id, exc)
                continue
            if not vector:
                continue
            items.append(
                {
                    "user_id": user_id,
                    "source_type": "file_chunk",
                    "source_id": file_id,
                    "chunk_index": chunk.index,
                    "content": chunk.content,
                    "vector": vector,
                }
            )
        if not items:
            return
        if await crud.get_file(db, user_id, file_id) is None:
            # deleted while we were embedding
            return
        await crud.add_embeddings(db, items)


async def wait_for_extraction(
    db: AsyncSession,
    user_id: str,
    file_ids: Sequence[UUID],
    timeout: float = EXTRACTION_WAIT_SECONDS,
    interval: float = EXTRACTION_POLL_SECONDS,
    abort: Optional[asyncio.Event] = None,
) -> List[models.FileAsset]:
    """Poll until no file is pending, the timeout passes or ``abort`` is set."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        records = await crud.get_files(db, user_id, file_ids)
        if all(r.extraction_status != "pending" for r in records):
            return records
        remaining = deadline - loop.time()
        if remaining <= 0 or (abort is not None and abort.is_set()):
            return records
        delay = min(interval, remaining)
        if abort is None:
            await asyncio.sleep(delay)
            continue
        try:
            await asyncio.wait_for(abort.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass


async def _cleanup_objects(record: models.FileAsset) -> None:
    if not await storage.remove_objects_quietly(_object_keys(record)):
        logger.warning("Orphaned objects left behind for deleted file %s", record.id)


async def release_reference(
    db: AsyncSession,
    user_id: str,
    file_id: UUID,
    conversation_id: Optional[UUID] = None,
    message_id: Optional[UUID] = None,
) -> bool:
    """Drop one link to a file; at zero references delete it everywhere. True if deleted."""
    if await crud.get_file(db, user_id, file_id) is None:
        return False
    record = await crud.release_file_reference(db, file_id, conversation_id=conversation_id, message_id=message_id)
    if record is None:
        return False
    logger.info("Deleted orphaned file %s", file_id)
    await _cleanup_objects(record)
    return True


async def delete_file(db: AsyncSession, user_id: str, file_id: UUID) -> None:
    record = await crud.get_file(db, user_id, file_id)
    if record is None:
        raise NotFoundError("File not found")
    await crud.delete_file_record(db, record)
    await _cleanup_objects(record)


async def _collect_orphans(db: AsyncSession, user_id: str, file_ids: Sequence[UUID]) -> int:
    deleted = 0
    for file_id in file_ids:
        try:
            if await release_reference(db, user_id, file_id):
                deleted += 1
        except Exception:
            logger.exception("Orphan cleanup failed for file %s", file_id)
            await db.rollback()
    return deleted


async def delete_conversation(db: AsyncSession, user_id: str, conversation_id: UUID) -> int:
    """Delete a conversation and every file it held the last reference to."""
    if await crud.get_conversation(db, user_id, conversation_id) is None:
        raise NotFoundError("Conversation not found")
    file_ids = list(
        dict.fromkeys(
            await crud.list_conversation_file_ids(db, conversation_id)
            + await crud.list_conversation_message_file_ids(db, conversation_id)
        )
    )
    await crud.delete_conversation_message_embeddings(db, user_id, conversation_id)
    await crud.delete_conversation(db, user_id, conversation_id)
    return await _collect_orphans(db, user_id, file_ids)


async def delete_message(db: AsyncSession, user_id: str, conversation_id: UUID, message_id: UUID) -> None:
    message = await crud.get_message(db, user_id, message_id)
    if message is None or message.conversation_id != conversation_id:
        raise NotFoundError("Message not found")
    await delete_messages(db, user_id, [message])


async def delete_messages(db: AsyncSession, user_id: str, messages: Sequence[models.Message]) -> int:
    """Delete messages with their embeddings and release the files they carried."""
    file_ids: List[UUID] = []
    for message in messages:
        file_ids.extend(await crud.list_message_file_ids(db, message.id))
        await crud.delete_embeddings_by_source(db, user_id, "message", message.id)
    deleted = await crud.delete_messages(db, user_id, [m.id for m in messages])
    await _collect_orphans(db, user_id, list(dict.fromkeys(file_ids)))
    return deleted
