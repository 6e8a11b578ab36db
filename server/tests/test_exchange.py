import asyncio

import pytest
from sqlalchemy import func, select

from conftest import FakeLLM, FakeVectorSearch, add_model, add_ready_file
from hearthchat import crud, models
from hearthchat.errors import ConflictError, ForbiddenError, NoModelError, NotFoundError, ValidationError
from hearthchat.schemas import AuthContext, MessageCreate
from hearthchat.services.context import ContextAssembler
from hearthchat.services.exchange import (
    HEARTBEAT,
    ExchangeEvent,
    ExchangeRegistry,
    ExchangeStreamer,
    clean_generated_title,
)
from hearthchat.services.tasks import BackgroundTaskPool

pytestmark = pytest.mark.anyio

USER = "user_1"
AUTH = AuthContext(user_id=USER)


@pytest.fixture
async def pool():
    p = BackgroundTaskPool()
    yield p
    await p.shutdown()


def make_streamer(session_factory, pool, llm, search=None, heartbeat_seconds=5.0):
    context = ContextAssembler(llm, search or FakeVectorSearch())
    return ExchangeStreamer(
        llm,
        context,
        pool,
        session_factory,
        heartbeat_seconds=heartbeat_seconds,
        extraction_wait_seconds=0.2,
        extraction_poll_seconds=0.01,
        title_timeout_seconds=1.0,
    )


async def run_exchange(streamer, db, conversation_id, content="Summarise my notes", auth=AUTH, **fields):
    abort = asyncio.Event()
    prepared = await streamer.prepare(db, auth, conversation_id, MessageCreate(content=content, **fields), abort)
    events = [event async for event in streamer.stream(prepared, abort)]
    return prepared, events


async def assistant_messages(db, conversation_id):
    return [m for m in await crud.list_messages(db, conversation_id) if m.role == "assistant"]


def _types(events):
    return [e.type for e in events]


async def test_full_exchange_streams_saves_and_titles(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, safety_content="Be kind.")
    notes = await add_ready_file(db, USER, "notes.txt", preview="Paris is the capital of France")
    await crud.link_conversation_file(db, conv.id, notes.id)
    streamer = make_streamer(session_factory, pool, fake_llm)

    prepared, events = await run_exchange(streamer, db, conv.id)

    assert _types(events) == ["status", "token", "token", "done", "title"]
    model_name, chat, host = fake_llm.calls[0]
    assert model_name == "m1" and host is None
    assert chat[0] == {"role": "system", "content": "Be kind."}
    assert "--- notes.txt ---\nParis is the capital of France" in chat[1]["content"]
    assert chat[-1] == {"role": "user", "content": "Summarise my notes"}

    done = events[3].data
    assert done["userMessageId"] == prepared.user_message.id
    assert done["model"] == {"name": "m1", "host": None}
    assert done["versionNumber"] == 1 and done["versionGroupId"] is None
    assert done["metadata"]["status"] == "completed"
    assert done["metadata"]["usage"]["prompt_tokens"] == 12

    replies = await assistant_messages(db, conv.id)
    assert len(replies) == 1
    assert replies[0].id == done["messageId"]
    assert replies[0].content == "Hello there"
    assert replies[0].meta["status"] == "completed"

    assert events[4].data == {"title": "Paris facts"}
    await db.refresh(conv)
    assert conv.title == "Paris facts"

    await pool.join()
    indexed = await db.scalar(
        select(func.count()).select_from(models.EmbeddingChunk).where(models.EmbeddingChunk.source_type == "message")
    )
    assert indexed == 2


async def test_abort_keeps_partial_reply(db, session_factory, pool):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER)
    llm = FakeLLM(hang_after=1)
    streamer = make_streamer(session_factory, pool, llm)
    abort = asyncio.Event()
    prepared = await streamer.prepare(db, AUTH, conv.id, MessageCreate(content="Tell me a story"), abort)

    events = []
    async for event in streamer.stream(prepared, abort):
        events.append(event)
        if event.type == "token":
            abort.set()

    assert _types(events) == ["status", "token", "cancelled"]
    replies = await assistant_messages(db, conv.id)
    assert len(replies) == 1
    assert replies[0].content == "Hello"
    assert replies[0].meta == {"status": "cancelled"}
    assert events[-1].data == {"messageId": replies[0].id}
    assert llm.title_calls == []


async def test_client_disconnect_saves_what_was_streamed(db, session_factory, pool):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER)
    streamer = make_streamer(session_factory, pool, FakeLLM(hang_after=1))
    abort = asyncio.Event()
    prepared = await streamer.prepare(db, AUTH, conv.id, MessageCreate(content="Tell me a story"), abort)

    stream = streamer.stream(prepared, abort)
    async for event in stream:
        if event.type == "token":
            break
    await stream.aclose()

    replies = await assistant_messages(db, conv.id)
    assert len(replies) == 1
    assert replies[0].content == "Hello"
    assert replies[0].meta == {"status": "cancelled"}


async def test_upstream_failure_is_saved_with_friendly_error(db, session_factory, pool):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER)
    llm = FakeLLM(error=RuntimeError("llama runner process has terminated: signal: killed"))
    streamer = make_streamer(session_factory, pool, llm)

    _, events = await run_exchange(streamer, db, conv.id, "hi")

    assert _types(events) == ["status", "token", "token", "error"]
    assert "ran out of memory" in events[-1].data["error"]
    replies = await assistant_messages(db, conv.id)
    assert len(replies) == 1
    assert events[-1].data["messageId"] == replies[0].id
    assert replies[0].content == "Hello there"
    assert replies[0].meta["status"] == "error"
    assert replies[0].meta["error"] == events[-1].data["error"]


async def test_context_failure_is_saved_as_an_errored_reply(db, session_factory, pool, fake_llm):
    class BrokenContext(ContextAssembler):
        async def build(self, *args, **kwargs):
            raise RuntimeError("history unavailable")

    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Broken")
    streamer = ExchangeStreamer(fake_llm, BrokenContext(fake_llm, FakeVectorSearch()), pool, session_factory)

    _, events = await run_exchange(streamer, db, conv.id, "hi")

    assert _types(events) == ["status", "error"]
    assert "history unavailable" in events[-1].data["error"]
    replies = await assistant_messages(db, conv.id)
    assert len(replies) == 1
    assert events[-1].data["messageId"] == replies[0].id
    assert replies[0].content == ""
    assert replies[0].meta["status"] == "error"
    assert fake_llm.calls == []


async def test_no_installed_model(db, session_factory, pool, fake_llm):
    await add_model(db, "gone", is_installed=False, is_active=True)
    conv = await crud.create_conversation(db, USER)
    streamer = make_streamer(session_factory, pool, fake_llm)

    with pytest.raises(NoModelError):
        await streamer.prepare(db, AUTH, conv.id, MessageCreate(content="hi"))
    assert fake_llm.calls == []


async def test_teen_cannot_use_unapproved_model(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True, allow_teen=False)
    conv = await crud.create_conversation(db, USER, safe_mode=True)
    streamer = make_streamer(session_factory, pool, fake_llm)

    with pytest.raises(ForbiddenError) as err:
        await streamer.prepare(db, AuthContext(user_id=USER, role="teen"), conv.id, MessageCreate(content="hi"))
    assert err.value.message == "You do not have access to the selected model."


async def test_admin_bypasses_model_restrictions(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True, safe_mode_allowed=False)
    conv = await crud.create_conversation(db, USER, safe_mode=True)
    streamer = make_streamer(session_factory, pool, fake_llm)

    prepared = await streamer.prepare(db, AuthContext(user_id=USER, role="admin"), conv.id, MessageCreate(content="hi"))
    assert prepared.model.name == "m1"


async def test_explicit_model_is_pinned(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    m2 = await add_model(db, "m2", host="http://gpu-box:11434")
    conv = await crud.create_conversation(db, USER, title="Pinned")
    streamer = make_streamer(session_factory, pool, fake_llm)

    prepared, events = await run_exchange(
        streamer, db, conv.id, "hi", model_name="m2", model_host="http://gpu-box:11434"
    )
    assert prepared.model.id == m2.id
    assert events[-1].data["model"] == {"name": "m2", "host": "http://gpu-box:11434"}
    assert fake_llm.calls[0][2] == "http://gpu-box:11434"

    await db.refresh(conv)
    assert conv.llm_model_id == m2.id
    followup, _ = await run_exchange(streamer, db, conv.id, "again")
    assert followup.model.id == m2.id


async def test_unknown_explicit_model_falls_back_without_pinning(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Fallback")
    streamer = make_streamer(session_factory, pool, fake_llm)

    prepared, _ = await run_exchange(streamer, db, conv.id, "hi", model_name="ghost")

    assert prepared.model.name == "m1"
    await db.refresh(conv)
    assert conv.llm_model_id is None


async def test_failed_attachment_never_reaches_the_model(db, s3, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Files")
    good = await add_ready_file(db, USER, "notes.txt", preview="Paris is the capital of France")
    bad = await add_ready_file(db, USER, "scan.pdf", status="failed", content_type="application/pdf")
    streamer = make_streamer(session_factory, pool, fake_llm)

    prepared, events = await run_exchange(streamer, db, conv.id, "Read these", file_ids=[good.id, bad.id])

    assert prepared.file_ids == [good.id]
    assert await crud.list_message_file_ids(db, prepared.user_message.id) == [good.id]
    assert await crud.list_conversation_file_ids(db, conv.id) == [good.id]
    # nothing else referenced it
    assert await crud.get_file(db, USER, bad.id) is None
    _, chat, _ = fake_llm.calls[0]
    assert not any("scan.pdf" in m["content"] for m in chat)
    assert _types(events)[-1] == "done"


async def test_failed_attachment_shared_with_another_conversation_survives(db, s3, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Files")
    other = await crud.create_conversation(db, USER, title="Older")
    bad = await add_ready_file(db, USER, "scan.pdf", status="failed", content_type="application/pdf")
    await crud.link_conversation_file(db, other.id, bad.id)
    streamer = make_streamer(session_factory, pool, fake_llm)

    prepared, _ = await run_exchange(streamer, db, conv.id, "Read this", file_ids=[bad.id])

    assert prepared.file_ids == []
    assert await crud.get_file(db, USER, bad.id) is not None
    assert await crud.list_conversation_file_ids(db, conv.id) == []
    assert await crud.list_conversation_file_ids(db, other.id) == [bad.id]


async def test_unknown_attachment_is_rejected(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER)
    theirs = await add_ready_file(db, "user_2", "secret.txt", preview="nope")
    streamer = make_streamer(session_factory, pool, fake_llm)

    with pytest.raises(NotFoundError):
        await streamer.prepare(db, AUTH, conv.id, MessageCreate(content="hi", file_ids=[theirs.id]))
    assert await crud.list_messages(db, conv.id) == []


async def test_edit_through_exchange_creates_version_two(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Edits")
    streamer = make_streamer(session_factory, pool, fake_llm)
    first, _ = await run_exchange(streamer, db, conv.id, "What is the capital of Frnace?")

    edited, events = await run_exchange(
        streamer, db, conv.id, "What is the capital of France?", edit_message_id=first.user_message.id
    )

    done = events[-1].data
    assert done["versionNumber"] == 2
    assert done["versionGroupId"] is not None
    assert done["editMessageId"] == first.user_message.id
    # only the new version is sent to the model
    assert fake_llm.calls[1][1] == [{"role": "user", "content": "What is the capital of France?"}]
    everything = await crud.list_messages(db, conv.id)
    assert len(everything) == 4
    assert {m.version_group_id for m in everything} == {done["versionGroupId"]}


async def test_heartbeats_flow_while_waiting_for_tokens(db, session_factory, pool):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Slow")
    streamer = make_streamer(session_factory, pool, FakeLLM(token_delay=0.05), heartbeat_seconds=0.01)

    _, events = await run_exchange(streamer, db, conv.id, "hi")

    assert "heartbeat" in _types(events)
    assert _types(events)[-1] == "done"
    assert HEARTBEAT.encode() == ": heartbeat\n\n"


async def test_title_failure_is_swallowed(db, session_factory, pool):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER)
    llm = FakeLLM(title=RuntimeError("model busy"))
    streamer = make_streamer(session_factory, pool, llm)

    _, events = await run_exchange(streamer, db, conv.id, "hi")

    assert _types(events) == ["status", "token", "token", "done"]
    assert len(llm.title_calls) == 1
    await db.refresh(conv)
    assert conv.title == models.DEFAULT_CONVERSATION_TITLE


async def test_titled_conversation_is_not_retitled(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="My trip")
    streamer = make_streamer(session_factory, pool, fake_llm)

    _, events = await run_exchange(streamer, db, conv.id, "hi")

    assert _types(events)[-1] == "done"
    assert fake_llm.title_calls == []


async def test_retrieval_failure_does_not_fail_the_exchange(db, session_factory, pool, fake_llm):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Search")
    search = FakeVectorSearch(error=RuntimeError("index offline"))
    streamer = make_streamer(session_factory, pool, fake_llm, search=search)

    _, events = await run_exchange(streamer, db, conv.id, "hi")

    assert len(search.calls) == 1
    assert _types(events)[-1] == "done"


def test_registry_allows_one_exchange_per_conversation():
    registry = ExchangeRegistry()
    conv_id = "c1"
    abort = registry.acquire(conv_id)
    with pytest.raises(ConflictError):
        registry.acquire(conv_id)

    assert registry.abort(conv_id) is True
    assert abort.is_set()

    registry.release(conv_id, asyncio.Event())
    assert registry.is_active(conv_id)
    registry.release(conv_id, abort)
    assert not registry.is_active(conv_id)
    assert registry.abort(conv_id) is False
    registry.acquire(conv_id)


def test_event_encoding():
    event = ExchangeEvent("token", {"content": "Hi"})
    assert event.encode() == 'event: token\ndata: {"type": "token", "content": "Hi"}\n\n'


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('"Paris facts."', "Paris facts"),
        ("Title: How credit cards work", "How credit cards work"),
        ("  Weekend hiking plans:  ", "Weekend hiking plans"),
    ],
)
def test_clean_generated_title(raw, expected):
    assert clean_generated_title(raw) == expected


def test_long_titles_are_cut_at_a_word_boundary():
    title = clean_generated_title("word " * 20)
    assert len(title) <= 50
    assert title.endswith("word")


def test_word_boundary_at_twenty_characters_is_used():
    assert clean_generated_title("a" * 20 + " " + "b" * 40) == "a" * 20
    assert clean_generated_title("a" * 19 + " " + "b" * 40) == ("a" * 19 + " " + "b" * 40)[:50]


async def test_regenerated_title_streams_and_is_saved(db, session_factory, pool):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Old name")
    for n in range(3):
        await crud.create_message(db, USER, conv.id, role="user", content=f"question {n}")
        await crud.create_message(db, USER, conv.id, role="assistant", content=f"answer {n}")
    llm = FakeLLM(tokens=['"Numbered', " questions", '."'])
    streamer = make_streamer(session_factory, pool, llm)

    prepared = await streamer.prepare_title(db, AUTH, conv.id)
    events = [event async for event in streamer.stream_title(prepared)]

    assert _types(events) == ["token", "token", "token", "done"]
    assert events[-1].data == {"title": "Numbered questions"}
    _, prompt, _ = llm.calls[0]
    assert prompt[1]["content"] == "User: question 0\n\nAssistant: answer 0\n\nUser: question 1\n\nAssistant: answer 1"
    await db.refresh(conv)
    assert conv.title == "Numbered questions"


async def test_regenerated_title_failure_keeps_the_old_title(db, session_factory, pool):
    await add_model(db, "m1", is_active=True)
    conv = await crud.create_conversation(db, USER, title="Old name")
    await crud.create_message(db, USER, conv.id, role="user", content="hi")
    streamer = make_streamer(session_factory, pool, FakeLLM(tokens=[], error=RuntimeError("connection refused")))

    prepared = await streamer.prepare_title(db, AUTH, conv.id)
    events = [event async for event in streamer.stream_title(prepared)]

    assert _types(events) == ["error"]
    assert "Cannot connect to Ollama" in events[0].data["error"]
    await db.refresh(conv)
    assert conv.title == "Old name"


async def test_title_needs_messages_and_a_model(db, session_factory, pool, fake_llm):
    conv = await crud.create_conversation(db, USER)
    streamer = make_streamer(session_factory, pool, fake_llm)

    with pytest.raises(ValidationError):
        await streamer.prepare_title(db, AUTH, conv.id)
    await crud.create_message(db, USER, conv.id, role="user", content="hi")
    with pytest.raises(NoModelError):
        await streamer.prepare_title(db, AUTH, conv.id)
    with pytest.raises(NotFoundError):
        await streamer.prepare_title(db, AuthContext(user_id="user_2"), conv.id)
