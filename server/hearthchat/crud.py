from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from . import models


def _insert_ignore(db: AsyncSession, model, rows: List[Dict[str, Any]]):
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    return insert(model).values(rows).on_conflict_do_nothing()


# --- groups -----------------------------------------------------------------

async def create_group(db: AsyncSession, user_id: str, name: str, guidance_text: Optional[str]) -> models.ConversationGroup:
    g = models.ConversationGroup(user_id=user_id, name=name, guidance_text=guidance_text)
    db.add(g)
    await db.commit()
    await db.refresh(g)
    return g


async def get_group(db: AsyncSession, user_id: str, group_id: UUID) -> Optional[models.ConversationGroup]:
    return await db.scalar(
        select(models.ConversationGroup).where(
            models.ConversationGroup.id == group_id,
            models.ConversationGroup.user_id == user_id,
        )
    )


async def list_groups(db: AsyncSession, user_id: str) -> List[models.ConversationGroup]:
    rows = await db.scalars(
        select(models.ConversationGroup)
        .where(models.ConversationGroup.user_id == user_id)
        .order_by(models.ConversationGroup.name.asc())
    )
    return list(rows)


# --- conversations ------------------------------------------------------------

async def create_conversation(
    db: AsyncSession,
    user_id: str,
    title: Optional[str] = None,
    safe_mode: Optional[bool] = None,
    safety_content: Optional[str] = None,
    llm_model_id: Optional[UUID] = None,
    group_id: Optional[UUID] = None,
) -> models.Conversation:
    c = models.Conversation(
        user_id=user_id,
        title=title or models.DEFAULT_CONVERSATION_TITLE,
        safe_mode=safe_mode,
        safety_content=safety_content,
        llm_model_id=llm_model_id,
        group_id=group_id,
    )
    db.add(c)
    await db.commit()
    await db.refresh(c)
    return c


async def get_conversation(db: AsyncSession, user_id: str, conversation_id: UUID) -> Optional[models.Conversation]:
    return await db.scalar(
        select(models.Conversation).where(
            models.Conversation.id == conversation_id,
            models.Conversation.user_id == user_id,
        )
    )


async def list_conversations(db: AsyncSession, user_id: str, archived: bool = False) -> List[models.Conversation]:
    rows = await db.scalars(
        select(models.Conversation)
        .where(models.Conversation.user_id == user_id, models.Conversation.archived.is_(archived))
        .order_by(models.Conversation.updated_at.desc())
    )
    return list(rows)


async def update_conversation(db: AsyncSession, conversation: models.Conversation, **fields: Any) -> models.Conversation:
    for key, value in fields.items():
        setattr(conversation, key, value)
    await db.commit()
    await db.refresh(conversation)
    return conversation


async def set_title_if_placeholder(db: AsyncSession, conversation_id: UUID, title: str) -> bool:
    """Only replaces the default title, so a rename by the user always wins."""
    result = await db.execute(
        update(models.Conversation)
        .where(
            models.Conversation.id == conversation_id,
            models.Conversation.title == models.DEFAULT_CONVERSATION_TITLE,
        )
        .values(title=title)
    )
    await db.commit()
    return (result.rowcount or 0) == 1


async def delete_conversation(db: AsyncSession, user_id: str, conversation_id: UUID) -> int:
    result = await db.execute(
        delete(models.Conversation).where(
            models.Conversation.id == conversation_id,
            models.Conversation.user_id == user_id,
        )
    )
    await db.commit()
    return result.rowcount or 0


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _is_visible_version():
    newer = aliased(models.Message)
    latest = (
        select(func.max(newer.version_number))
        .where(newer.version_group_id == models.Message.version_group_id)
        .scalar_subquery()
    )
    return or_(models.Message.version_group_id.is_(None), models.Message.version_number == latest)


async def search_conversations(
    db: AsyncSession, user_id: str, query: str, limit: int = 20
) -> List[Tuple[models.Conversation, int, Optional[str]]]:
    """Conversations whose title or visible message text contains ``query``.

    Title hits rank above content hits. Each hit carries the first matching
    message body (None for a title-only hit) so the caller can cut a snippet.
    """
    pattern = _like_pattern(query)
    title_match = models.Conversation.title.ilike(pattern, escape="\\")
    message_match = and_(models.Message.content.ilike(pattern, escape="\\"), _is_visible_version())
    has_message = (
        select(models.Message.id)
        .where(models.Message.conversation_id == models.Conversation.id, message_match)
        .exists()
    )
    relevance = case((title_match, 2), else_=1)
    rows = await db.execute(
        select(models.Conversation, relevance)
        .where(models.Conversation.user_id == user_id, or_(title_match, has_message))
        .order_by(relevance.desc(), models.Conversation.updated_at.desc())
        .limit(limit)
    )
    hits = []
    for conversation, rank in rows.all():
        content = await db.scalar(
            select(models.Message.content)
            .where(models.Message.conversation_id == conversation.id, message_match)
            .order_by(models.Message.created_at.asc())
            .limit(1)
        )
        hits.append((conversation, rank, content))
    return hits


# --- messages -----------------------------------------------------------------

async def create_message(
    db: AsyncSession,
    user_id: str,
    conversation_id: UUID,
    role: str,
    content: str,
    llm_model_id: Optional[UUID] = None,
    meta: Optional[Dict[str, Any]] = None,
    version_group_id: Optional[UUID] = None,
    version_number: int = 1,
) -> models.Message:
    m = models.Message(
        user_id=user_id,
        conversation_id=conversation_id,
        role=role,
        content=content,
        llm_model_id=llm_model_id,
        meta=meta,
        version_group_id=version_group_id,
        version_number=version_number,
    )
    db.add(m)
    await db.execute(
        update(models.Conversation)
        .where(models.Conversation.id == conversation_id)
        .values(updated_at=datetime.now(timezone.utc))
    )
    await db.commit()
    await db.refresh(m)
    return m


async def get_message(db: AsyncSession, user_id: str, message_id: UUID) -> Optional[models.Message]:
    return await db.scalar(
        select(models.Message).where(models.Message.id == message_id, models.Message.user_id == user_id)
    )


async def list_messages(db: AsyncSession, conversation_id: UUID) -> List[models.Message]:
    rows = await db.scalars(
        select(models.Message)
        .where(models.Message.conversation_id == conversation_id)
        .order_by(models.Message.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(rows)


async def promote_to_version_group(db: AsyncSession, message_id: UUID, version_group_id: UUID) -> bool:
    """Tag an ungrouped message as version 1 of a group. False if it was already grouped."""
    result = await db.execute(
        update(models.Message)
        .where(models.Message.id == message_id, models.Message.version_group_id.is_(None))
        .values(version_group_id=version_group_id, version_number=1)
    )
    await db.commit()
    return (result.rowcount or 0) == 1


async def max_version_number(db: AsyncSession, version_group_id: UUID) -> int:
    value = await db.scalar(
        select(func.max(models.Message.version_number)).where(models.Message.version_group_id == version_group_id)
    )
    return value or 0


async def get_last_message(db: AsyncSession, conversation_id: UUID) -> Optional[models.Message]:
    return await db.scalar(
        select(models.Message)
        .where(models.Message.conversation_id == conversation_id)
        .order_by(models.Message.created_at.desc())
        .limit(1)
    )


async def delete_messages(db: AsyncSession, user_id: str, message_ids: Sequence[UUID]) -> int:
    if not message_ids:
        return 0
    result = await db.execute(
        delete(models.Message).where(models.Message.id.in_(message_ids), models.Message.user_id == user_id)
    )
    await db.commit()
    return result.rowcount or 0


# --- model registry -----------------------------------------------------------

async def get_model(db: AsyncSession, model_id: UUID) -> Optional[models.LlmModel]:
    return await db.get(models.LlmModel, model_id)


def _host_clause(host: Optional[str]):
    return models.LlmModel.host == host if host else models.LlmModel.host.is_(None)


async def find_model(db: AsyncSession, name: str, host: Optional[str] = None) -> Optional[models.LlmModel]:
    return await db.scalar(select(models.LlmModel).where(models.LlmModel.name == name, _host_clause(host)))


async def get_active_model(db: AsyncSession) -> Optional[models.LlmModel]:
    return await db.scalar(select(models.LlmModel).where(models.LlmModel.is_active.is_(True)).limit(1))


async def list_installed_models(db: AsyncSession) -> List[models.LlmModel]:
    rows = await db.scalars(
        select(models.LlmModel).where(models.LlmModel.is_installed.is_(True)).order_by(models.LlmModel.name.asc())
    )
    return list(rows)


async def upsert_model(db: AsyncSession, name: str, host: Optional[str] = None, **fields: Any) -> models.LlmModel:
    record = await find_model(db, name, host)
    if record is None:
        record = models.LlmModel(name=name, host=host)
        db.add(record)
    if fields.get("is_active"):
        await db.execute(update(models.LlmModel).values(is_active=False))
    for key, value in fields.items():
        setattr(record, key, value)
    await db.commit()
    await db.refresh(record)
    return record


# --- files --------------------------------------------------------------------

async def get_file(db: AsyncSession, user_id: str, file_id: UUID) -> Optional[models.FileAsset]:
    return await db.scalar(
        select(models.FileAsset)
        .where(models.FileAsset.id == file_id, models.FileAsset.user_id == user_id)
        .execution_options(populate_existing=True)
    )


async def get_files(db: AsyncSession, user_id: str, file_ids: Sequence[UUID]) -> List[models.FileAsset]:
    if not file_ids:
        return []
    rows = await db.scalars(
        select(models.FileAsset).where(models.FileAsset.id.in_(list(file_ids)), models.FileAsset.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    by_id = {row.id: row for row in rows}
    return [by_id[fid] for fid in file_ids if fid in by_id]


async def find_file_by_hash(db: AsyncSession, user_id: str, content_hash: str) -> Optional[models.FileAsset]:
    return await db.scalar(
        select(models.FileAsset).where(
            models.FileAsset.user_id == user_id,
            models.FileAsset.content_hash == content_hash,
        )
    )


async def list_user_files(db: AsyncSession, user_id: str) -> List[models.FileAsset]:
    rows = await db.scalars(
        select(models.FileAsset)
        .where(models.FileAsset.user_id == user_id)
        .order_by(models.FileAsset.created_at.desc())
    )
    return list(rows)


async def create_file(db: AsyncSession, record: models.FileAsset) -> models.FileAsset:
    db.add(record)
    await db.commit()
    await db.refresh(record)
    return record


async def update_file(db: AsyncSession, file_id: UUID, **fields: Any) -> None:
    await db.execute(update(models.FileAsset).where(models.FileAsset.id == file_id).values(**fields))
    await db.commit()


# --- file links -----------------------------------------------------------------

async def link_conversation_file(db: AsyncSession, conversation_id: UUID, file_id: UUID) -> None:
    await db.execute(
        _insert_ignore(db, models.ConversationFile, [{"conversation_id": conversation_id, "file_id": file_id}])
    )
    await db.commit()


async def link_message_files(db: AsyncSession, message_id: UUID, file_ids: Iterable[UUID]) -> None:
    rows = [{"message_id": message_id, "file_id": fid} for fid in file_ids]
    if not rows:
        return
    await db.execute(_insert_ignore(db, models.MessageFile, rows))
    await db.commit()


async def list_conversation_file_ids(db: AsyncSession, conversation_id: UUID) -> List[UUID]:
    rows = await db.scalars(
        select(models.ConversationFile.file_id)
        .where(models.ConversationFile.conversation_id == conversation_id)
        .order_by(models.ConversationFile.created_at.asc())
    )
    return list(rows)


async def list_conversation_files(db: AsyncSession, user_id: str, conversation_id: UUID) -> List[models.FileAsset]:
    rows = await db.scalars(
        select(models.FileAsset)
        .join(models.ConversationFile, models.ConversationFile.file_id == models.FileAsset.id)
        .where(
            models.ConversationFile.conversation_id == conversation_id,
            models.FileAsset.user_id == user_id,
        )
        .order_by(models.ConversationFile.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(rows)


async def list_message_file_ids(db: AsyncSession, message_id: UUID) -> List[UUID]:
    rows = await db.scalars(select(models.MessageFile.file_id).where(models.MessageFile.message_id == message_id))
    return list(rows)


async def list_conversation_message_file_ids(db: AsyncSession, conversation_id: UUID) -> List[UUID]:
    rows = await db.scalars(
        select(models.MessageFile.file_id)
        .join(models.Message, models.Message.id == models.MessageFile.message_id)
        .where(models.Message.conversation_id == conversation_id)
        .distinct()
    )
    return list(rows)


async def list_message_files(db: AsyncSession, message_ids: Iterable[UUID]) -> List[Tuple[UUID, models.FileAsset]]:
    ids = list(message_ids)
    if not ids:
        return []
    result = await db.execute(
        select(models.MessageFile.message_id, models.FileAsset)
        .join(models.FileAsset, models.MessageFile.file_id == models.FileAsset.id)
        .where(models.MessageFile.message_id.in_(ids))
    )
    return [(row[0], row[1]) for row in result.all()]


async def count_file_references(db: AsyncSession, file_id: UUID) -> int:
    conv_refs = await db.scalar(
        select(func.count()).select_from(models.ConversationFile).where(models.ConversationFile.file_id == file_id)
    )
    msg_refs = await db.scalar(
        select(func.count()).select_from(models.MessageFile).where(models.MessageFile.file_id == file_id)
    )
    return (conv_refs or 0) + (msg_refs or 0)


async def release_file_reference(
    db: AsyncSession,
    file_id: UUID,
    conversation_id: Optional[UUID] = None,
    message_id: Optional[UUID] = None,
) -> Optional[models.FileAsset]:
    """Drop one link and, if it was the last, the file row and its embeddings.

    Runs as a single transaction with the file row locked, so two concurrent
    releases can neither both miss the zero count nor both delete. Returns the
    deleted file (for object-store cleanup) or None if references remain.
    """
    record = await db.scalar(select(models.FileAsset).where(models.FileAsset.id == file_id).with_for_update())
    if record is None:
        await db.rollback()
        return None
    if conversation_id is not None:
        await db.execute(
            delete(models.ConversationFile).where(
                models.ConversationFile.conversation_id == conversation_id,
                models.ConversationFile.file_id == file_id,
            )
        )
    if message_id is not None:
        await db.execute(
            delete(models.MessageFile).where(
                models.MessageFile.message_id == message_id,
                models.MessageFile.file_id == file_id,
            )
        )
    if await count_file_references(db, file_id) > 0:
        await db.commit()
        return None
    await _delete_file_rows(db, record)
    await db.commit()
    return record


async def delete_file_record(db: AsyncSession, record: models.FileAsset) -> None:
    await _delete_file_rows(db, record)
    await db.commit()


async def _delete_file_rows(db: AsyncSession, record: models.FileAsset) -> None:
    await db.execute(
        delete(models.EmbeddingChunk).where(
            models.EmbeddingChunk.user_id == record.user_id,
            models.EmbeddingChunk.source_type == "file_chunk",
            models.EmbeddingChunk.source_id == record.id,
        )
    )
    await db.execute(delete(models.FileAsset).where(models.FileAsset.id == record.id))


# --- embeddings -----------------------------------------------------------------

async def add_embeddings(db: AsyncSession, items: List[Dict[str, Any]]) -> None:
    if not items:
        return
    db.add_all([models.EmbeddingChunk(**item) for item in items])
    await db.commit()


async def delete_embeddings_by_source(db: AsyncSession, user_id: str, source_type: str, source_id: UUID) -> None:
    await db.execute(
        delete(models.EmbeddingChunk).where(
            models.EmbeddingChunk.user_id == user_id,
            models.EmbeddingChunk.source_type == source_type,
            models.EmbeddingChunk.source_id == source_id,
        )
    )
    await db.commit()


async def delete_conversation_message_embeddings(db: AsyncSession, user_id: str, conversation_id: UUID) -> None:
    await db.execute(
        delete(models.EmbeddingChunk).where(
            models.EmbeddingChunk.user_id == user_id,
            models.EmbeddingChunk.conversation_id == conversation_id,
            models.EmbeddingChunk.source_type == "message",
        )
    )
    await db.commit()


async def search_embeddings(
    db: AsyncSession,
    user_id: str,
    query_vector: List[float],
    conversation_id: Optional[UUID] = None,
    file_ids: Sequence[UUID] = (),
    limit: int = 8,
) -> List[Tuple[models.EmbeddingChunk, float]]:
    chunk = models.EmbeddingChunk
    distance = chunk.vector.cosine_distance(query_vector).label("distance")
    conditions = [chunk.user_id == user_id]
    file_ids = list(file_ids)
    if conversation_id and file_ids:
        conditions.append(
            or_(
                and_(chunk.source_type == "message", chunk.conversation_id == conversation_id),
                and_(chunk.source_type == "file_chunk", chunk.source_id.in_(file_ids)),
            )
        )
    elif conversation_id:
        conditions.append(chunk.conversation_id == conversation_id)
    elif file_ids:
        conditions.append(and_(chunk.source_type == "file_chunk", chunk.source_id.in_(file_ids)))
    result = await db.execute(select(chunk, distance).where(*conditions).order_by(distance).limit(limit))
    return [(row[0], float(row[1])) for row in result.all()]
