from __future__ import annotations

import re


# Defaults sized for small embedding inputs with local context carried across seams.
CHUNK_SIZE_CHARS = 500
CHUNK_OVERLAP_CHARS = 50

_PARAGRAPH_RE = re.compile(r"\n\n+")
# Split after sentence-final punctuation, including full-width CJK variants.
_SENTENCE_RE = re.compile(r"(?<=[。！？.!?])\s*")


class _ChunkBuffer:
    def __init__(self, max_size: int, overlap: int) -> None:
        self.max_size = max_size
        self.overlap = overlap
        self.text = ""
        self.chunks: list[str] = []

    def emit(self, piece: str) -> None:
        piece = piece.strip()
        if piece:
            self.chunks.append(piece)

    def seal(self, seed: str) -> None:
        # Seal the running buffer and carry its tail into the next one.
        self.emit(self.text)
        tail = self.text[-self.overlap:] if self.overlap > 0 else ""
        self.text = tail + seed

    def flush(self) -> None:
        self.emit(self.text)
        self.text = ""


def split_into_chunks(
    text: str,
    *,
    max_chunk_size: int = CHUNK_SIZE_CHARS,
    overlap: int = CHUNK_OVERLAP_CHARS,
) -> list[str]:
    """Split text into bounded, overlapping chunks for embedding.

    Paragraphs are packed into a buffer until the next one would overflow it.
    Oversized paragraphs fall back to sentence splitting, and a sentence that
    alone exceeds the limit is emitted verbatim as its own chunk.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if overlap < 0 or overlap >= max_chunk_size:
        raise ValueError("overlap must be in [0, max_chunk_size)")

    buffer = _ChunkBuffer(max_chunk_size, overlap)
    for paragraph in _PARAGRAPH_RE.split(text):
        if not paragraph.strip():
            continue
        if len(paragraph) > max_chunk_size:
            # Close the running buffer before switching to sentence granularity.
            buffer.flush()
            for sentence in _SENTENCE_RE.split(paragraph):
                if not sentence:
                    continue
                if len(sentence) > max_chunk_size:
                    buffer.flush()
                    buffer.emit(sentence)
                elif len(buffer.text) + len(sentence) > max_chunk_size:
                    if buffer.text:
                        buffer.seal(sentence)
                    else:
                        buffer.text = sentence
                else:
                    buffer.text += sentence
        elif buffer.text and len(buffer.text) + len(paragraph) > max_chunk_size:
            buffer.seal(paragraph)
        else:
            buffer.text += ("\n\n" if buffer.text else "") + paragraph

    buffer.flush()
    return buffer.chunks
