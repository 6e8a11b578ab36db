import pytest

from conftest import FakeLLM, FakeVectorSearch, add_ready_file
from hearthchat import crud, models
from hearthchat.services.context import ContextAssembler, assemble_messages, file_block

pytestmark = pytest.mark.anyio

USER = "user_1"


def _file(filename, status="done", preview=None, content_type="text/plain"):
    return models.FileAsset(filename=filename, extraction_status=status, text_preview=preview, content_type=content_type)


def _history(*pairs):
    return [models.Message(role=role, content=content) for role, content in pairs]


def test_layers_are_ordered_strongest_first():
    chat = assemble_messages(
        _history(("user", "Summarise my notes")),
        safety_content="Be kind.",
        guidance_text="You are a travel agent.",
        targeted_filenames=["notes.txt"],
        retrieved=["Paris is the capital of France"],
        conversation_files=[_file("notes.txt", preview="Paris is the capital of France")],
    )

    assert [m["role"] for m in chat] == ["system"] * 5 + ["user"]
    assert chat[0]["content"] == "Be kind."
    assert chat[1]["content"] == "You are a travel agent."
    assert "refers specifically to these attached files: notes.txt" in chat[2]["content"]
    assert chat[3]["content"].startswith("Additional relevant context")
    assert chat[4]["content"].startswith("The user has attached the following files")
    assert "--- notes.txt ---\nParis is the capital of France" in chat[4]["content"]
    assert chat[-1] == {"role": "user", "content": "Summarise my notes"}


def test_missing_layers_are_left_out():
    chat = assemble_messages(_history(("user", "hi")))
    assert chat == [{"role": "user", "content": "hi"}]


def test_failed_reply_without_content_is_not_sent_back():
    chat = assemble_messages(
        _history(("user", "first"), ("assistant", ""), ("user", "second"), ("assistant", "ok"), ("user", "third")),
        safety_content="Be kind.",
    )
    assert chat[0]["content"] == "Be kind."
    assert [m["content"] for m in chat[1:]] == ["first", "second", "ok", "third"]
    assert chat[-1]["role"] == "user"


def test_file_placeholders():
    assert "still being processed" in file_block(_file("a.pdf", status="pending"))
    assert "[Text extraction failed for this file]" in file_block(_file("a.pdf", status="failed"))
    image = file_block(_file("photo.png", content_type="image/png"))
    assert image.startswith("--- photo.png (image/png) ---")
    assert "could not be extracted as text" in image


def test_file_preview_is_capped():
    block = file_block(_file("big.txt", preview="z" * 10_000))
    assert len(block) < 4100


async def test_build_uses_visible_history_group_guidance_and_files(db):
    group = await crud.create_group(db, USER, "Travel", "You are a travel agent.")
    conv = await crud.create_conversation(db, USER, safety_content="Be kind.", group_id=group.id)
    notes = await add_ready_file(db, USER, "notes.txt", preview="Paris is the capital of France")
    other = await add_ready_file(db, USER, "other.txt", preview="unrelated")
    await crud.link_conversation_file(db, conv.id, notes.id)
    await crud.create_message(db, USER, conv.id, "user", "Summarise my notes")

    search = FakeVectorSearch(results=["chunk one", "chunk two"])
    assembler = ContextAssembler(FakeLLM(), search, retrieval_limit=3)
    chat = await assembler.build(db, USER, conv, "Summarise my notes", [notes.id])

    assert chat[0]["content"] == "Be kind."
    assert chat[1]["content"] == "You are a travel agent."
    assert "notes.txt" in chat[2]["content"]
    assert "chunk one\n\n---\n\nchunk two" in chat[3]["content"]
    assert "notes.txt" in chat[4]["content"] and "other.txt" not in chat[4]["content"]
    assert chat[-1]["content"] == "Summarise my notes"
    assert search.calls == [{"user_id": USER, "conversation_id": conv.id, "file_ids": [notes.id], "limit": 3}]
    assert other.id not in search.calls[0]["file_ids"]


async def test_retrieval_failure_does_not_block_the_prompt(db):
    conv = await crud.create_conversation(db, USER)
    await crud.create_message(db, USER, conv.id, "user", "hello")

    assembler = ContextAssembler(FakeLLM(), FakeVectorSearch(error=RuntimeError("index offline")))
    chat = await assembler.build(db, USER, conv, "hello")

    assert chat == [{"role": "user", "content": "hello"}]


async def test_embedding_failure_yields_no_chunks():
    llm = FakeLLM()
    llm.fail_embed = True
    search = FakeVectorSearch(results=["never"])
    assembler = ContextAssembler(llm, search)
    assert await assembler.retrieve(USER, None, [], "q") == []
    assert search.calls == []
