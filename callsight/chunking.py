from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

TARGET_CHUNK_CHARS = 1500
CHUNK_OVERLAP_CHARS = 200

# Terminal punctuation only ends a sentence when followed by whitespace, so
# emails, IPs and decimals stay whole.
_SENTENCE_RE = re.compile(r".*?[.!?]+(?=\s|$)\s*", re.DOTALL)


@dataclass(frozen=True)
class TextChunk:
    text: str
    index: int


def split_sentences(text: str) -> List[str]:
    """Split on terminal punctuation, keeping any unterminated tail."""
    sentences: List[str] = []
    cursor = 0
    for match in _SENTENCE_RE.finditer(text):
        if match.start() > cursor:
            sentences.append(text[cursor : match.start()])
        sentences.append(match.group(0))
        cursor = match.end()
    if cursor < len(text):
        sentences.append(text[cursor:])
    return sentences


def _split_oversized(sentence: str, limit: int) -> List[str]:
    if len(sentence) <= limit:
        return [sentence]
    pieces: List[str] = []
    remaining = sentence
    while len(remaining) > limit:
        cut = remaining.rfind(" ", 0, limit)
        if cut <= limit // 2:
            cut = limit
        else:
            cut += 1
        pieces.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        pieces.append(remaining)
    return pieces


def _overlap_tail(buffer: str, overlap_chars: int) -> str:
    """Last ``overlap_chars`` of the buffer, trimmed forward to a token boundary."""
    if overlap_chars <= 0:
        return ""
    if len(buffer) <= overlap_chars:
        return buffer
    tail = buffer[-overlap_chars:]
    if buffer[-overlap_chars - 1].isspace():
        return tail
    boundary = re.search(r"\s", tail)
    return tail[boundary.start() :] if boundary else ""


def chunk_transcript(
    text: str,
    target_chars: int = TARGET_CHUNK_CHARS,
    overlap_chars: int = CHUNK_OVERLAP_CHARS,
) -> List[TextChunk]:
    if target_chars <= 0:
        raise ValueError("target_chars must be > 0")
    if overlap_chars < 0 or overlap_chars >= target_chars:
        raise ValueError("overlap_chars must be >= 0 and < target_chars")
    if not text or not text.strip():
        return []

    units: List[str] = []
    for sentence in split_sentences(text):
        units.extend(_split_oversized(sentence, target_chars))

    chunks: List[TextChunk] = []
    current = ""
    for unit in units:
        if current and len(current) + len(unit) > target_chars:
            emitted = current.strip()
            if emitted:
                chunks.append(TextChunk(text=emitted, index=len(chunks)))
            overlap = _overlap_tail(current, overlap_chars)
            current = overlap + unit
        else:
            current += unit

    tail = current.strip()
    if tail:
        chunks.append(TextChunk(text=tail, index=len(chunks)))
    return chunks
