"""Split inference output into Discord-sized messages."""
from __future__ import annotations

from typing import Iterator

from .models import NO_RESULT

MAX_CHUNK_LENGTH = 2000


def iter_chunks(text: str, max_length: int = MAX_CHUNK_LENGTH) -> Iterator[str]:
    """Yield consecutive slices of ``text`` no longer than ``max_length``.

    Empty text yields a single ``NO_RESULT`` placeholder.
    """

    if max_length <= 0:
        raise ValueError("max_length must be positive")
    if not text:
        yield NO_RESULT
        return
    for start in range(0, len(text), max_length):
        yield text[start:start + max_length]


__all__ = ["MAX_CHUNK_LENGTH", "iter_chunks"]
