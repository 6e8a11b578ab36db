import logging
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.background import BackgroundTask

from .. import crud, models, schemas
from ..database import get_db
from ..deps import get_current_user, get_exchange_registry, get_exchange_streamer
from ..errors import ConflictError, NotFoundError
from ..services import files as file_service
from ..services.exchange import ExchangeRegistry, ExchangeStreamer
from ..services.versions import last_exchange, visible_messages

router = APIRouter(prefix="/conversations/{conversation_id}/messages", tags=["messages"])

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}

logger = logging.getLogger(__name__)


async def _require_conversation(db: AsyncSession, user_id: str, conversation_id: UUID) -> models.Conversation:
    conversation = await crud.get_conversation(db, user_id, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation


def _refuse_while_streaming(registry: ExchangeRegistry, conversation_id: UUID) -> None:
    if registry.is_active(conversation_id):
        raise ConflictError("A response is still being generated for this conversation")


async def _serialize_messages(db: AsyncSession, msgs: List[models.Message]) -> List[schemas.MessageOut]:
    files_by_message: Dict[UUID, List[schemas.MessageAttachment]] = {}
    for message_id, record in await crud.list_message_files(db, [m.id for m in msgs]):
        files_by_message.setdefault(message_id, []).append(
            schemas.MessageAttachment(
                id=record.id,
                filename=record.filename,
                extraction_failed=record.extraction_status == "failed",
            )
        )

    model_refs: Dict[UUID, Optional[schemas.ModelRef]] = {}
    for model_id in {m.llm_model_id for m in msgs if m.llm_model_id}:
        model = await crud.get_model(db, model_id)
        model_refs[model_id] = schemas.ModelRef(name=model.name, host=model.host) if model else None

    return [
        schemas.MessageOut(
            id=m.id,
            conversation_id=m.conversation_id,
            role=m.role,
            content=m.content,
            meta=schemas.parse_meta(m.meta),
            model=model_refs.get(m.llm_model_id) if m.llm_model_id else None,
            version_group_id=m.version_group_id,
            version_number=m.version_number,
            files=files_by_message.get(m.id, []),
            created_at=m.created_at,
        )
        for m in msgs
    ]


@router.get("", response_model=schemas.MessageListResponse)
async def list_messages(
    conversation_id: UUID,
    visible: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    msgs = await crud.list_messages(db, conversation_id)
    if visible:
        msgs = visible_messages(msgs)
    return schemas.MessageListResponse(messages=await _serialize_messages(db, msgs))


@router.post("")
async def send_message(
    conversation_id: UUID,
    payload: schemas.MessageCreate,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
    streamer: ExchangeStreamer = Depends(get_exchange_streamer),
    registry: ExchangeRegistry = Depends(get_exchange_registry),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    abort = registry.acquire(conversation_id)
    try:
        prepared = await streamer.prepare(db, auth, conversation_id, payload, abort)
    except BaseException:
        registry.release(conversation_id, abort)
        raise

    async def event_stream():
        try:
            async for event in streamer.stream(prepared, abort):
                yield event.encode()
        finally:
            registry.release(conversation_id, abort)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        # covers a stream that never got iterated
        background=BackgroundTask(registry.release, conversation_id, abort),
    )


@router.post("/abort")
async def abort_message(
    conversation_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
    registry: ExchangeRegistry = Depends(get_exchange_registry),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    aborted = registry.abort(conversation_id)
    if aborted:
        logger.info("Abort requested for conversation %s", conversation_id)
    return {"ok": True, "aborted": aborted}


@router.post("/undo-last")
async def undo_last_message(
    conversation_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
    registry: ExchangeRegistry = Depends(get_exchange_registry),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    _refuse_while_streaming(registry, conversation_id)
    last = await crud.get_last_message(db, conversation_id)
    if last is None:
        raise NotFoundError("No message to undo")
    await file_service.delete_messages(db, auth.user_id, [last])
    return {"ok": True}


@router.post("/delete-last-exchange")
async def delete_last_exchange(
    conversation_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
    registry: ExchangeRegistry = Depends(get_exchange_registry),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    _refuse_while_streaming(registry, conversation_id)
    deleted = await file_service.delete_messages(db, auth.user_id, await last_exchange(db, conversation_id))
    return {"ok": True, "deleted": deleted}


@router.delete("/{message_id}")
async def delete_message(
    conversation_id: UUID,
    message_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    await _require_conversation(db, auth.user_id, conversation_id)
    await file_service.delete_message(db, auth.user_id, conversation_id, message_id)
    return {"ok": True}
