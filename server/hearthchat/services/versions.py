import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from .. import crud, models
from ..errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class VersionSlot:
    """Where the next user message of an edit lands."""

    version_group_id: Optional[UUID] = None
    version_number: int = 1
    edit_message_id: Optional[UUID] = None


def visible_messages(messages: Sequence[models.Message]) -> List[models.Message]:
    """Ungrouped messages plus, per version group, only the highest version."""
    latest: Dict[UUID, int] = {}
    for m in messages:
        if m.version_group_id is not None:
            latest[m.version_group_id] = max(latest.get(m.version_group_id, 0), m.version_number)
    return [
        m
        for m in messages
        if m.version_group_id is None or m.version_number == latest[m.version_group_id]
    ]


async def resolve_visible_history(db: AsyncSession, conversation_id: UUID) -> List[models.Message]:
    return visible_messages(await crud.list_messages(db, conversation_id))


async def begin_edit(db: AsyncSession, user_id: str, conversation_id: UUID, original_message_id: UUID) -> VersionSlot:
    original = await crud.get_message(db, user_id, original_message_id)
    if original is None or original.conversation_id != conversation_id:
        raise NotFoundError("Message to edit not found")
    if original.role != "user":
        raise ValidationError("Only user messages can be edited")

    if original.version_group_id is None:
        group_id = uuid.uuid4()
        if await crud.promote_to_version_group(db, original.id, group_id):
            await _tag_following_reply(db, conversation_id, original.id, group_id)
            return VersionSlot(version_group_id=group_id, version_number=2, edit_message_id=original.id)
        # lost the promote race; someone else grouped it first
        logger.info("Message %s was grouped concurrently, re-reading", original.id)
        await db.refresh(original)

    group_id = original.version_group_id
    next_version = await crud.max_version_number(db, group_id) + 1
    return VersionSlot(version_group_id=group_id, version_number=next_version, edit_message_id=original.id)


async def _tag_following_reply(db: AsyncSession, conversation_id: UUID, message_id: UUID, group_id: UUID) -> None:
    messages = await crud.list_messages(db, conversation_id)
    for idx, m in enumerate(messages):
        if m.id != message_id:
            continue
        if idx + 1 < len(messages) and messages[idx + 1].role == "assistant":
            await crud.promote_to_version_group(db, messages[idx + 1].id, group_id)
        return


async def last_exchange(db: AsyncSession, conversation_id: UUID) -> List[models.Message]:
    """The newest user turn and its replies.

    A turn that was edited takes its whole version group with it, every
    earlier version included. Otherwise the turn is the last user message
    and everything stored after it.
    """
    messages = await crud.list_messages(db, conversation_id)
    question = next((m for m in reversed(messages) if m.role == "user"), None)
    if question is None:
        return []
    if question.version_group_id is not None:
        return [m for m in messages if m.version_group_id == question.version_group_id]
    return [m for m in messages if m.created_at >= question.created_at]
