import asyncio
import io
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from botocore.exceptions import ClientError

from hearthchat import crud, models
from hearthchat.database import init_models, make_engine, make_session_factory
from hearthchat.schemas import Usage
from hearthchat.services import storage
from hearthchat.services.llm import ChatChunk


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeS3:
    """Just enough of the boto3 S3 client for the storage module."""

    def __init__(self):
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self.fail_deletes = False

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[Key] = (Body, ContentType)
        return {}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "Not found"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key][0])}

    def delete_objects(self, Bucket, Delete):
        if self.fail_deletes:
            raise ClientError({"Error": {"Code": "InternalError", "Message": "boom"}}, "DeleteObjects")
        for entry in Delete["Objects"]:
            self.objects.pop(entry["Key"], None)
        return {}


class FakeLLM:
    """Scripted stand-in for OllamaClient."""

    def __init__(
        self,
        tokens: Sequence[str] = ("Hello", " there"),
        error: Optional[BaseException] = None,
        title="Paris facts",
        hang_after: Optional[int] = None,
        token_delay: float = 0.0,
    ):
        self.tokens = list(tokens)
        self.error = error
        self.title = title
        self.hang_after = hang_after
        self.token_delay = token_delay
        self.fail_embed = False
        self.calls: List[Tuple[str, List[Dict[str, str]], Optional[str]]] = []
        self.title_calls: List[List[Dict[str, str]]] = []
        self.embedded: List[str] = []

    async def stream_chat(self, model, messages, host=None):
        self.calls.append((model, messages, host))
        for i, token in enumerate(self.tokens):
            if self.hang_after is not None and i == self.hang_after:
                await asyncio.Event().wait()
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            yield ChatChunk(content=token)
        if self.error is not None:
            raise self.error
        yield ChatChunk(
            content="",
            done=True,
            usage=Usage(prompt_tokens=12, completion_tokens=len(self.tokens), total_tokens=12 + len(self.tokens)),
        )

    async def complete(self, model, messages, host=None):
        self.title_calls.append(messages)
        if isinstance(self.title, BaseException):
            raise self.title
        return self.title

    async def embed(self, text):
        self.embedded.append(text)
        if self.fail_embed:
            raise RuntimeError("embedding backend down")
        return [0.1] * models.EMBEDDING_DIMENSIONS


class FakeVectorSearch:
    def __init__(self, results: Sequence[str] = (), error: Optional[Exception] = None):
        self.results = list(results)
        self.error = error
        self.calls = []

    async def search(self, user_id, query_vector, conversation_id, file_ids, limit):
        self.calls.append({"user_id": user_id, "conversation_id": conversation_id, "file_ids": list(file_ids), "limit": limit})
        if self.error is not None:
            raise self.error
        return self.results[:limit]


@pytest.fixture
def s3(monkeypatch):
    fake = FakeS3()
    monkeypatch.setenv("STORAGE_BUCKET", "test-bucket")
    monkeypatch.setattr(storage, "_get_client", lambda: fake)
    return fake


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_search():
    return FakeVectorSearch()


@pytest.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'hearthchat.db'}")
    await init_models(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def add_model(db, name="m1", host=None, **flags) -> models.LlmModel:
    flags.setdefault("is_installed", True)
    return await crud.upsert_model(db, name, host, **flags)


async def add_ready_file(db, user_id, filename="notes.txt", preview="", status="done", content_type="text/plain"):
    record = models.FileAsset(
        user_id=user_id,
        filename=filename,
        content_type=content_type,
        size=max(len(preview), 1),
        content_hash=format(abs(hash((user_id, filename))) & 0xFFFFFFFF, "08x"),
        object_key=storage.generate_object_key(user_id),
        text_preview=preview or None,
        extraction_status=status,
    )
    return await crud.create_file(db, record)
