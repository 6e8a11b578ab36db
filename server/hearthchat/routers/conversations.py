from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .. import crud, schemas
from ..database import get_db
from ..deps import get_current_user, get_exchange_streamer
from ..errors import ForbiddenError, NotFoundError
from ..services import files as file_service
from ..services.exchange import ExchangeStreamer
from ..services.safety import DEFAULT_SAFETY_RULES, check_safe_mode_change, safety_for_new_conversation
from .messages import SSE_HEADERS

router = APIRouter(prefix="/conversations", tags=["conversations"])


async def _require_conversation(db: AsyncSession, user_id: str, conversation_id: UUID):
    conversation = await crud.get_conversation(db, user_id, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation


async def _check_references(db: AsyncSession, user_id: str, group_id, llm_model_id) -> None:
    if group_id is not None and await crud.get_group(db, user_id, group_id) is None:
        raise NotFoundError("Group not found")
    if llm_model_id is not None and await crud.get_model(db, llm_model_id) is None:
        raise NotFoundError("Model not found")


@router.post("", response_model=schemas.ConversationOut, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    payload: schemas.ConversationCreate,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    await _check_references(db, auth.user_id, payload.group_id, payload.llm_model_id)
    safe_mode, safety_content = safety_for_new_conversation(auth.role, payload.safe_mode, auth.safe_mode)
    return await crud.create_conversation(
        db,
        auth.user_id,
        title=payload.title,
        safe_mode=safe_mode,
        safety_content=safety_content,
        llm_model_id=payload.llm_model_id,
        group_id=payload.group_id,
    )


@router.get("")
async def list_conversations(
    archived: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    rows = await crud.list_conversations(db, auth.user_id, archived=archived)
    return [schemas.ConversationOut.model_validate(c) for c in rows]


@router.get("/{conversation_id}", response_model=schemas.ConversationOut)
async def get_conversation(
    conversation_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    return await _require_conversation(db, auth.user_id, conversation_id)


@router.patch("/{conversation_id}", response_model=schemas.ConversationOut)
async def update_conversation(
    conversation_id: UUID,
    payload: schemas.ConversationUpdate,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    conversation = await _require_conversation(db, auth.user_id, conversation_id)
    fields = payload.model_dump(exclude_unset=True)
    await _check_references(db, auth.user_id, fields.get("group_id"), fields.get("llm_model_id"))

    if "safe_mode" in fields:
        requested = bool(fields["safe_mode"])
        if requested != bool(conversation.safe_mode) or conversation.safe_mode is None:
            has_messages = bool(await crud.list_messages(db, conversation_id))
            reason = check_safe_mode_change(auth.role, conversation.safe_mode, requested, has_messages)
            if reason:
                raise ForbiddenError(reason)
        if requested and conversation.safe_mode is not True:
            fields["safety_content"] = DEFAULT_SAFETY_RULES["adult"]
        elif not requested:
            fields["safety_content"] = None

    if not fields:
        return conversation
    return await crud.update_conversation(db, conversation, **fields)


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    deleted_files = await file_service.delete_conversation(db, auth.user_id, conversation_id)
    return {"ok": True, "deleted_files": deleted_files}


@router.post("/{conversation_id}/generate-title")
async def generate_title(
    conversation_id: UUID,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
    streamer: ExchangeStreamer = Depends(get_exchange_streamer),
):
    prepared = await streamer.prepare_title(db, auth, conversation_id)

    async def event_stream():
        async for event in streamer.stream_title(prepared):
            yield event.encode()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)
