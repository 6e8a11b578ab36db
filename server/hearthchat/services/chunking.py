import re
from dataclasses import dataclass
from typing import List

CHUNK_SIZE = 1000
CHUNK_OVERLAP = 150

_SENTENCE_END = re.compile(r"[.!?]\s")


@dataclass
class Chunk:
    content: str
    index: int


def _last_sentence_break(text: str, start: int, end: int) -> int:
    last = -1
    for match in _SENTENCE_END.finditer(text, start, end):
        last = match.end()
    return last


def chunk_text(text: str, size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[Chunk]:
    """Split text into overlapping windows, preferring paragraph then sentence breaks."""
    if not text or not text.strip():
        return []
    if len(text) <= size:
        return [Chunk(content=text, index=0)]

    chunks: List[Chunk] = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        if end < len(text):
            paragraph = text.rfind("\n\n", 0, end)
            if paragraph > start + size / 2:
                end = paragraph + 2
            else:
                sentence = _last_sentence_break(text, start + size // 2, end)
                if sentence > start:
                    end = sentence

        chunks.append(Chunk(content=text[start:end].strip(), index=len(chunks)))

        if end >= len(text):
            break
        next_start = end - overlap
        # always make forward progress
        start = next_start if next_start > start else end

    return [c for c in chunks if c.content]
