import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from ..schemas import Usage

OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434").rstrip("/")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")
# model loading plus generation for large local models
CHAT_TIMEOUT_SECONDS = float(os.getenv("CHAT_TIMEOUT_SECONDS", "600"))
EMBED_TIMEOUT_SECONDS = float(os.getenv("EMBED_TIMEOUT_SECONDS", "120"))

_OOM = re.compile(r"\boom\b")

logger = logging.getLogger(__name__)


@dataclass
class ChatChunk:
    content: str
    done: bool = False
    usage: Optional[Usage] = None


def describe_exception(exc: BaseException) -> str:
    """Flatten an exception and its causes into one string for logging and matching."""
    parts: List[str] = []
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current).strip()
        parts.append(f"{type(current).__name__}: {text}" if text else type(current).__name__)
        current = current.__cause__ or current.__context__
    return " | ".join(parts)


def friendly_error(raw: str) -> str:
    """Map known backend failure signatures to a short message safe to show users."""
    lower = raw.lower()
    if "signal: killed" in lower or _OOM.search(lower) or "out of memory" in lower:
        return (
            "The model ran out of memory and was stopped by the system. "
            "Try a smaller model or close other applications to free up RAM."
        )
    if "connection refused" in lower or "econnrefused" in lower or "apiconnectionerror" in lower:
        return "Cannot connect to Ollama. Make sure Ollama is running and try again."
    if "model" in lower and "not found" in lower:
        return (
            "The selected model is not available. "
            "Please download it from the admin panel or choose a different model."
        )
    if "timeout" in lower or "timed out" in lower:
        return (
            "The request timed out. The model may be too large for your system, or Ollama may be "
            "overloaded. Try again or switch to a smaller model."
        )
    if "context length" in lower or "too long" in lower:
        return (
            "The conversation is too long for this model's context window. "
            "Try starting a new conversation or use a model with a larger context size."
        )
    if "no response body" in lower or "empty response" in lower:
        return "Ollama returned an empty response. It may be overloaded, please try again in a moment."

    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and parsed.get("error"):
        return f"Model error: {parsed['error']}"
    return f"Model error: {raw[:200]}…" if len(raw) > 200 else f"Model error: {raw}"


class OllamaClient:
    """Chat and embedding calls against Ollama's OpenAI-compatible API."""

    def __init__(self, default_host: str = OLLAMA_HOST, embedding_model: str = EMBEDDING_MODEL):
        self.default_host = default_host
        self.embedding_model = embedding_model
        self._clients: Dict[str, AsyncOpenAI] = {}

    def _client(self, host: Optional[str] = None) -> AsyncOpenAI:
        base = (host or self.default_host).rstrip("/")
        client = self._clients.get(base)
        if client is None:
            # Ollama ignores the key but the SDK requires one
            client = AsyncOpenAI(base_url=f"{base}/v1", api_key="ollama", timeout=CHAT_TIMEOUT_SECONDS, max_retries=0)
            self._clients[base] = client
        return client

    async def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        host: Optional[str] = None,
    ) -> AsyncIterator[ChatChunk]:
        started = time.monotonic()
        stream = await self._client(host).chat.completions.create(
            model=model,
            messages=messages,
            stream=True,
            stream_options={"include_usage": True},
        )
        usage = Usage()
        try:
            async for chunk in stream:
                if chunk.usage:
                    usage = Usage(
                        prompt_tokens=chunk.usage.prompt_tokens or 0,
                        completion_tokens=chunk.usage.completion_tokens or 0,
                        total_tokens=chunk.usage.total_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield ChatChunk(content=delta)
        finally:
            await stream.close()
        usage.duration_ms = int((time.monotonic() - started) * 1000)
        yield ChatChunk(content="", done=True, usage=usage)

    async def complete(self, model: str, messages: List[Dict[str, str]], host: Optional[str] = None) -> str:
        parts: List[str] = []
        async for chunk in self.stream_chat(model, messages, host):
            parts.append(chunk.content)
        return "".join(parts)

    async def embed(self, text: str) -> List[float]:
        resp = await self._client().embeddings.create(
            model=self.embedding_model,
            input=text,
            timeout=EMBED_TIMEOUT_SECONDS,
        )
        if not resp.data:
            return []
        return [float(x) for x in resp.data[0].embedding]
