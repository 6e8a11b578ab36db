"""One user turn in, one streamed assistant turn out.

``ExchangeStreamer.prepare`` does everything that can still fail with a plain
JSON error (edit bookkeeping, persisting the user message, waiting for
attachments, picking and authorizing the model). ``ExchangeStreamer.stream``
then relays the completion as events and guarantees that exactly one
assistant message is stored, whether the turn completes, is aborted, loses
its client or fails upstream.

Title regeneration follows the same split: ``prepare_title`` validates, and
``stream_title`` relays the tokens before storing the cleaned title.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import crud, models
from ..errors import ConflictError, ForbiddenError, NoModelError, NotFoundError, ValidationError
from ..schemas import AuthContext, CancelledMeta, CompletedMeta, ErroredMeta, MessageCreate, Usage
from . import files, versions
from .chunking import chunk_text
from .context import ChatMessage, ContextAssembler
from .llm import OllamaClient, describe_exception, friendly_error
from .model_resolution import model_access_allowed, resolve_model
from .tasks import BackgroundTaskPool

HEARTBEAT_SECONDS = float(os.getenv("EXCHANGE_HEARTBEAT_SECONDS", "5"))
TITLE_TIMEOUT_SECONDS = float(os.getenv("TITLE_TIMEOUT_SECONDS", "60"))
TITLE_MAX_CHARS = 50
TITLE_SOURCE_CHARS = 300
TITLE_SUMMARY_MESSAGES = 4

TITLE_GENERATION_PROMPT = """You are a title generator. Given a user question and an assistant response, write a concise conversational title that describes what the user asked about.

Rules:
- Maximum 50 characters
- Write a natural, readable phrase (e.g. "How credit card transactions work")
- Do NOT quote or copy verbatim text from the conversation
- Do NOT start with "User asks" or "Question about" or similar prefixes
- Do NOT include punctuation at the end
- Reply with ONLY the title, nothing else"""

_TITLE_PREFIX = re.compile(r"^title:\s*", re.IGNORECASE)
_TITLE_TRAILING = re.compile(r"[.:]+$")

logger = logging.getLogger(__name__)


def clean_generated_title(raw: str) -> str:
    title = raw.strip()
    if len(title) >= 2 and title[0] == title[-1] and title[0] in ("'", '"'):
        title = title[1:-1].strip()
    title = _TITLE_PREFIX.sub("", title)
    title = _TITLE_TRAILING.sub("", title).strip()
    if len(title) > TITLE_MAX_CHARS:
        truncated = title[:TITLE_MAX_CHARS]
        last_space = truncated.rfind(" ")
        title = truncated[:last_space] if last_space >= 20 else truncated
    return title


@dataclass
class ExchangeEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def encode(self) -> str:
        if self.type == "heartbeat":
            return ": heartbeat\n\n"
        payload = {"type": self.type, **self.data}
        return f"event: {self.type}\ndata: {json.dumps(payload, default=str)}\n\n"


HEARTBEAT = ExchangeEvent("heartbeat")


@dataclass
class PreparedExchange:
    user_id: str
    conversation: models.Conversation
    user_message: models.Message
    model: models.LlmModel
    slot: versions.VersionSlot
    file_ids: List[UUID] = field(default_factory=list)


@dataclass
class PreparedTitle:
    user_id: str
    conversation_id: UUID
    model: models.LlmModel
    summary: str


class ExchangeRegistry:
    """In-flight exchanges, at most one per conversation, each with its abort flag."""

    def __init__(self) -> None:
        self._active: Dict[UUID, asyncio.Event] = {}

    def acquire(self, conversation_id: UUID) -> asyncio.Event:
        if conversation_id in self._active:
            raise ConflictError("A response is already being generated for this conversation")
        abort = asyncio.Event()
        self._active[conversation_id] = abort
        return abort

    def release(self, conversation_id: UUID, abort: asyncio.Event) -> None:
        if self._active.get(conversation_id) is abort:
            del self._active[conversation_id]

    def abort(self, conversation_id: UUID) -> bool:
        event = self._active.get(conversation_id)
        if event is None:
            return False
        event.set()
        return True

    def is_active(self, conversation_id: UUID) -> bool:
        return conversation_id in self._active


class ExchangeStreamer:
    def __init__(
        self,
        llm: OllamaClient,
        context: ContextAssembler,
        pool: BackgroundTaskPool,
        session_factory: async_sessionmaker,
        heartbeat_seconds: float = HEARTBEAT_SECONDS,
        extraction_wait_seconds: float = files.EXTRACTION_WAIT_SECONDS,
        extraction_poll_seconds: float = files.EXTRACTION_POLL_SECONDS,
        title_timeout_seconds: float = TITLE_TIMEOUT_SECONDS,
    ):
        self._llm = llm
        self._context = context
        self._pool = pool
        self._session_factory = session_factory
        self._heartbeat_seconds = heartbeat_seconds
        self._extraction_wait_seconds = extraction_wait_seconds
        self._extraction_poll_seconds = extraction_poll_seconds
        self._title_timeout_seconds = title_timeout_seconds
        self._persisting: Set[asyncio.Task] = set()

    # --- resolving ---------------------------------------------------------------

    async def prepare(
        self,
        db: AsyncSession,
        auth: AuthContext,
        conversation_id: UUID,
        request: MessageCreate,
        abort: Optional[asyncio.Event] = None,
    ) -> PreparedExchange:
        conversation = await crud.get_conversation(db, auth.user_id, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")

        file_ids = list(dict.fromkeys(request.file_ids))
        if file_ids and len(await crud.get_files(db, auth.user_id, file_ids)) != len(file_ids):
            raise NotFoundError("File not found")

        slot = versions.VersionSlot()
        if request.edit_message_id is not None:
            slot = await versions.begin_edit(db, auth.user_id, conversation_id, request.edit_message_id)

        user_message = await crud.create_message(
            db,
            auth.user_id,
            conversation_id,
            role="user",
            content=request.content,
            version_group_id=slot.version_group_id,
            version_number=slot.version_number,
        )

        if file_ids:
            await crud.link_message_files(db, user_message.id, file_ids)
            for file_id in file_ids:
                await crud.link_conversation_file(db, conversation_id, file_id)
            file_ids = await self._drop_failed_files(
                db, auth.user_id, conversation_id, user_message.id, file_ids, abort
            )

        explicit = None
        if request.model_name:
            explicit = await crud.find_model(db, request.model_name, request.model_host)
        pinned = await crud.get_model(db, conversation.llm_model_id) if conversation.llm_model_id else None
        model = resolve_model(explicit, pinned, await crud.get_active_model(db))
        if model is None:
            raise NoModelError()

        safe_mode = bool(conversation.safe_mode) or auth.safe_mode
        if not model_access_allowed(auth.role, safe_mode, model):
            raise ForbiddenError("You do not have access to the selected model.")

        if explicit is not None and model is explicit and conversation.llm_model_id != model.id:
            conversation = await crud.update_conversation(db, conversation, llm_model_id=model.id)

        return PreparedExchange(
            user_id=auth.user_id,
            conversation=conversation,
            user_message=user_message,
            model=model,
            slot=slot,
            file_ids=file_ids,
        )

    async def _drop_failed_files(
        self,
        db: AsyncSession,
        user_id: str,
        conversation_id: UUID,
        message_id: UUID,
        file_ids: List[UUID],
        abort: Optional[asyncio.Event],
    ) -> List[UUID]:
        records = await files.wait_for_extraction(
            db,
            user_id,
            file_ids,
            timeout=self._extraction_wait_seconds,
            interval=self._extraction_poll_seconds,
            abort=abort,
        )
        failed = {r.id for r in records if r.extraction_status == "failed"}
        for file_id in failed:
            # the file may still be referenced elsewhere, so release rather than delete
            await files.release_reference(
                db, user_id, file_id, conversation_id=conversation_id, message_id=message_id
            )
        return [fid for fid in file_ids if fid not in failed]

    # --- streaming -----------------------------------------------------------------

    async def stream(self, prepared: PreparedExchange, abort: asyncio.Event) -> AsyncIterator[ExchangeEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        buffer: List[str] = []
        helpers: List[asyncio.Task] = []
        settled = False
        conversation = prepared.conversation
        try:
            async with self._session_factory() as db:
                yield ExchangeEvent("status", {"message": "Thinking..."})
                try:
                    chat = await self._context.build(
                        db,
                        prepared.user_id,
                        conversation,
                        prepared.user_message.content,
                        prepared.file_ids,
                    )
                except Exception as exc:
                    settled = True
                    yield await self._fail(prepared, "", exc)
                    return
                helpers.append(asyncio.create_task(self._read(prepared.model, chat, queue)))
                helpers.append(asyncio.create_task(self._heartbeat(queue)))
                helpers.append(asyncio.create_task(self._watch(abort, queue)))

                usage: Optional[Usage] = None
                while True:
                    kind, payload = await queue.get()
                    if kind == "heartbeat":
                        yield HEARTBEAT
                    elif kind == "token":
                        buffer.append(payload)
                        yield ExchangeEvent("token", {"content": payload})
                    elif kind == "usage":
                        usage = payload
                    else:
                        break

                if kind == "abort":
                    buffer.extend(_drain_tokens(queue))
                    settled = True
                    message = await self._persist(prepared, "".join(buffer), CancelledMeta())
                    logger.info("Exchange in conversation %s cancelled by the user", conversation.id)
                    yield ExchangeEvent("cancelled", {"messageId": message.id})
                    return

                if kind == "error":
                    settled = True
                    yield await self._fail(prepared, "".join(buffer), payload)
                    return

                content = "".join(buffer)
                meta = CompletedMeta(usage=usage)
                settled = True
                message = await self._persist(prepared, content, meta)
                yield ExchangeEvent(
                    "done",
                    {
                        "messageId": message.id,
                        "userMessageId": prepared.user_message.id,
                        "metadata": meta.model_dump(),
                        "model": {"name": prepared.model.name, "host": prepared.model.host},
                        "versionGroupId": prepared.slot.version_group_id,
                        "versionNumber": prepared.slot.version_number,
                        "editMessageId": prepared.slot.edit_message_id,
                    },
                )
                self._pool.spawn(
                    self._index_exchange(prepared, message),
                    name=f"index-exchange-{message.id}",
                )

                if conversation.title != models.DEFAULT_CONVERSATION_TITLE or not content:
                    return
                title_task = asyncio.create_task(self._generate_title(prepared, content))
                helpers.append(title_task)
                title_task.add_done_callback(lambda _: queue.put_nowait(("title", None)))
                while True:
                    kind, _ = await queue.get()
                    if kind == "heartbeat":
                        yield HEARTBEAT
                    elif kind in ("title", "abort"):
                        break
                if kind == "title" and not title_task.cancelled():
                    title = title_task.result()
                    if title and await crud.set_title_if_placeholder(db, conversation.id, title):
                        yield ExchangeEvent("title", {"title": title})
        except (asyncio.CancelledError, GeneratorExit):
            if not settled:
                settled = True
                logger.info("Client left conversation %s mid-stream, keeping partial reply", conversation.id)
                buffer.extend(_drain_tokens(queue))
                try:
                    await self._persist(prepared, "".join(buffer), CancelledMeta())
                except asyncio.CancelledError:
                    pass
            raise
        finally:
            for task in helpers:
                task.cancel()

    async def _read(self, model: models.LlmModel, chat: List[ChatMessage], queue: asyncio.Queue) -> None:
        try:
            async for chunk in self._llm.stream_chat(model.name, chat, model.host):
                if chunk.content:
                    queue.put_nowait(("token", chunk.content))
                if chunk.done:
                    queue.put_nowait(("usage", chunk.usage))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            queue.put_nowait(("error", exc))
            return
        queue.put_nowait(("end", None))

    async def _heartbeat(self, queue: asyncio.Queue) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            queue.put_nowait(("heartbeat", None))

    async def _watch(self, abort: asyncio.Event, queue: asyncio.Queue) -> None:
        await abort.wait()
        queue.put_nowait(("abort", None))

    # --- terminal states ---------------------------------------------------------

    async def _persist(self, prepared: PreparedExchange, content: str, meta) -> models.Message:
        """Store the assistant reply in its own task so a dying stream cannot interrupt it."""
        task = asyncio.ensure_future(self._save_reply(prepared, content, meta))
        self._persisting.add(task)
        task.add_done_callback(self._persisting.discard)
        return await asyncio.shield(task)

    async def _fail(self, prepared: PreparedExchange, content: str, exc: BaseException) -> ExchangeEvent:
        raw = describe_exception(exc)
        logger.error("Chat stream failed for conversation %s: %s", prepared.conversation.id, raw)
        detail = friendly_error(raw)
        message_id = None
        try:
            message = await self._persist(prepared, content, ErroredMeta(error=detail))
            message_id = message.id
        except Exception:
            logger.exception("Failed to save errored reply for conversation %s", prepared.conversation.id)
        return ExchangeEvent("error", {"error": detail, "messageId": message_id})

    async def _save_reply(self, prepared: PreparedExchange, content: str, meta) -> models.Message:
        async with self._session_factory() as db:
            return await crud.create_message(
                db,
                prepared.user_id,
                prepared.conversation.id,
                role="assistant",
                content=content,
                llm_model_id=prepared.model.id,
                meta=meta.model_dump(),
                version_group_id=prepared.slot.version_group_id,
                version_number=prepared.slot.version_number,
            )

    async def _index_exchange(self, prepared: PreparedExchange, reply: models.Message) -> None:
        items = []
        for message in (prepared.user_message, reply):
            for chunk in chunk_text(message.content):
                try:
                    vector = await self._llm.embed(chunk.content)
                except Exception as exc:
                    logger.warning("Indexing message %s failed: %s", message.id, exc)
                    continue
                if vector:
                    items.append(
                        {
                            "user_id": prepared.user_id,
                            "conversation_id": prepared.conversation.id,
                            "source_type": "message",
                            "source_id": message.id,
                            "chunk_index": chunk.index,
                            "content": chunk.content,
                            "vector": vector,
                        }
                    )
        if items:
            async with self._session_factory() as db:
                await crud.add_embeddings(db, items)

    async def _generate_title(self, prepared: PreparedExchange, answer: str) -> Optional[str]:
        question = prepared.user_message.content
        prompt = [
            {"role": "system", "content": TITLE_GENERATION_PROMPT},
            {
                "role": "user",
                "content": (
                    f"User question:\n{question[:TITLE_SOURCE_CHARS]}\n\n"
                    f"Assistant response:\n{answer[:TITLE_SOURCE_CHARS]}"
                ),
            },
        ]
        try:
            raw = await asyncio.wait_for(
                self._llm.complete(prepared.model.name, prompt, prepared.model.host),
                timeout=self._title_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Title generation failed for conversation %s: %s", prepared.conversation.id, exc)
            return None
        return clean_generated_title(raw) or None

    # --- title regeneration --------------------------------------------------------

    async def prepare_title(self, db: AsyncSession, auth: AuthContext, conversation_id: UUID) -> PreparedTitle:
        conversation = await crud.get_conversation(db, auth.user_id, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        history = versions.visible_messages(await crud.list_messages(db, conversation_id))
        if not history:
            raise ValidationError("No messages to generate a title from")

        pinned = await crud.get_model(db, conversation.llm_model_id) if conversation.llm_model_id else None
        model = resolve_model(None, pinned, await crud.get_active_model(db))
        if model is None:
            raise NoModelError()
        if not model_access_allowed(auth.role, bool(conversation.safe_mode) or auth.safe_mode, model):
            raise ForbiddenError("You do not have access to the selected model.")

        summary = "\n\n".join(
            f"{'User' if m.role == 'user' else 'Assistant'}: {m.content[:TITLE_SOURCE_CHARS]}"
            for m in history[:TITLE_SUMMARY_MESSAGES]
        )
        return PreparedTitle(user_id=auth.user_id, conversation_id=conversation_id, model=model, summary=summary)

    async def stream_title(self, prepared: PreparedTitle) -> AsyncIterator[ExchangeEvent]:
        """Relay the title as it is generated, then store the cleaned result."""
        prompt = [
            {"role": "system", "content": TITLE_GENERATION_PROMPT},
            {"role": "user", "content": prepared.summary},
        ]
        parts: List[str] = []
        try:
            async for chunk in self._llm.stream_chat(prepared.model.name, prompt, prepared.model.host):
                if chunk.content:
                    parts.append(chunk.content)
                    yield ExchangeEvent("token", {"content": chunk.content})
        except Exception as exc:
            raw = describe_exception(exc)
            logger.warning("Title regeneration failed for conversation %s: %s", prepared.conversation_id, raw)
            yield ExchangeEvent("error", {"error": friendly_error(raw)})
            return

        title = clean_generated_title("".join(parts))
        if title:
            async with self._session_factory() as db:
                conversation = await crud.get_conversation(db, prepared.user_id, prepared.conversation_id)
                if conversation is not None:
                    await crud.update_conversation(db, conversation, title=title)
        yield ExchangeEvent("done", {"title": title})


def _drain_tokens(queue: asyncio.Queue) -> List[str]:
    tokens = []
    while not queue.empty():
        kind, payload = queue.get_nowait()
        if kind == "token":
            tokens.append(payload)
    return tokens
