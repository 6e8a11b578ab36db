import logging
from typing import Dict, List, Optional, Protocol, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import crud, models
from .files import Embedder
from .versions import resolve_visible_history

RETRIEVAL_LIMIT = 8
FILE_PREVIEW_CHARS = 4000

logger = logging.getLogger(__name__)

ChatMessage = Dict[str, str]


class VectorSearch(Protocol):
    async def search(
        self,
        user_id: str,
        query_vector: List[float],
        conversation_id: Optional[UUID],
        file_ids: Sequence[UUID],
        limit: int,
    ) -> List[str]: ...


class PgVectorSearch:
    """Nearest chunks by cosine distance, read in a session of its own."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def search(self, user_id, query_vector, conversation_id, file_ids, limit):
        async with self._session_factory() as db:
            rows = await crud.search_embeddings(
                db,
                user_id,
                query_vector,
                conversation_id=conversation_id,
                file_ids=file_ids,
                limit=limit,
            )
        return [chunk.content for chunk, _ in rows]


def file_block(record: models.FileAsset) -> str:
    if record.extraction_status == "done" and record.text_preview:
        return f"--- {record.filename} ---\n{record.text_preview[:FILE_PREVIEW_CHARS]}"
    if record.extraction_status == "pending":
        return f"--- {record.filename} ---\n[File is still being processed, text content is not yet available]"
    if record.extraction_status == "failed":
        return f"--- {record.filename} ---\n[Text extraction failed for this file]"
    return (
        f"--- {record.filename} ({record.content_type}) ---\n"
        "[This file is attached but its content could not be extracted as text]"
    )


def assemble_messages(
    history: Sequence[models.Message],
    safety_content: Optional[str] = None,
    guidance_text: Optional[str] = None,
    targeted_filenames: Sequence[str] = (),
    retrieved: Sequence[str] = (),
    conversation_files: Sequence[models.FileAsset] = (),
) -> List[ChatMessage]:
    """Build the prompt: system layers, strongest first, then the visible history.

    History goes in first and each layer is prepended in turn (files,
    retrieval, targeting hint, guidance, safety), so safety content always
    ends up at index 0.
    """
    chat: List[ChatMessage] = [
        {"role": m.role, "content": m.content}
        for m in history
        # an exchange that failed before its first token leaves an empty reply
        if not (m.role == "assistant" and not m.content)
    ]

    if conversation_files:
        blocks = "\n\n".join(file_block(f) for f in conversation_files)
        chat.insert(0, {
            "role": "system",
            "content": f"The user has attached the following files to this conversation:\n\n{blocks}",
        })
    if retrieved:
        joined = "\n\n---\n\n".join(retrieved)
        chat.insert(0, {"role": "system", "content": f"Additional relevant context from files and messages:\n\n{joined}"})
    if targeted_filenames:
        names = ", ".join(targeted_filenames)
        chat.insert(0, {
            "role": "system",
            "content": (
                f"The user's latest message refers specifically to these attached files: {names}. "
                "Focus your answer on the content from these files."
            ),
        })
    if guidance_text:
        chat.insert(0, {"role": "system", "content": guidance_text})
    if safety_content:
        chat.insert(0, {"role": "system", "content": safety_content})
    return chat


class ContextAssembler:
    def __init__(self, embedder: Embedder, vector_search: VectorSearch, retrieval_limit: int = RETRIEVAL_LIMIT):
        self._embedder = embedder
        self._vector_search = vector_search
        self._retrieval_limit = retrieval_limit

    async def retrieve(
        self,
        user_id: str,
        conversation_id: UUID,
        file_ids: Sequence[UUID],
        query: str,
    ) -> List[str]:
        """Best effort: any embedding or search failure yields no chunks."""
        try:
            vector = await self._embedder.embed(query)
            if not vector:
                return []
            return await self._vector_search.search(
                user_id, vector, conversation_id, list(file_ids), self._retrieval_limit
            )
        except Exception as exc:
            logger.warning("Context retrieval skipped for conversation %s: %s", conversation_id, exc)
            return []

    async def build(
        self,
        db: AsyncSession,
        user_id: str,
        conversation: models.Conversation,
        query: str,
        message_file_ids: Sequence[UUID] = (),
    ) -> List[ChatMessage]:
        history = await resolve_visible_history(db, conversation.id)
        conversation_files = await crud.list_conversation_files(db, user_id, conversation.id)
        retrieved = await self.retrieve(user_id, conversation.id, [f.id for f in conversation_files], query)
        targeted = await crud.get_files(db, user_id, message_file_ids)

        guidance = None
        if conversation.group_id is not None:
            group = await crud.get_group(db, user_id, conversation.group_id)
            guidance = group.guidance_text if group is not None else None

        return assemble_messages(
            history,
            safety_content=conversation.safety_content,
            guidance_text=guidance,
            targeted_filenames=[f.filename for f in targeted],
            retrieved=retrieved,
            conversation_files=conversation_files,
        )
