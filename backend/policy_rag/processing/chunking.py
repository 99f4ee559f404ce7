"""
Fixed-Window Chunker  —  Overlapping Character Spans
══════════════════════════════════════════════════════

Policy documents are split into windows of ``size`` characters; each window
starts ``size - overlap`` characters after the previous one, so neighbouring
chunks share ``overlap`` characters of context:

    text     ├──────────────────────────────────────────────────┤
    span 0   ├────────────┤
    span 1            ├────────────┤
    span 2                     ├────────────┤
                      └──┘ overlap

Spans are exact slices of the input (no stripping, no re-joining), which
gives two properties the rest of the pipeline relies on:

  • Determinism: identical text → identical spans in identical order, so
    sequence_index assigned at persistence matches span order on every
    reprocess.
  • Coverage: dropping the first ``overlap`` characters of every span after
    the first and concatenating reconstructs the original text exactly
    (see reconstruct_text).

A trailing span shorter than ``min_chunk_chars`` is not emitted on its own;
the previous span is extended to the end of the text instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE      = 1000
DEFAULT_CHUNK_OVERLAP   = 200
DEFAULT_MIN_CHUNK_CHARS = 20


@dataclass(frozen=True)
class TextSpan:
    sequence_index: int   # 0-based position within the document
    start:          int   # inclusive char offset into the source text
    end:            int   # exclusive char offset
    text:           str   # source[start:end]

    def __len__(self) -> int:
        return self.end - self.start


def chunk_text(
    text: str,
    size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_chunk_chars: int = DEFAULT_MIN_CHUNK_CHARS,
) -> list[TextSpan]:
    """
    Split ``text`` into overlapping fixed-size spans.

    Raises:
        ValueError: size <= 0, or overlap outside [0, size).
    """
    if size <= 0:
        raise ValueError(f"size must be positive, got {size}")
    if not 0 <= overlap < size:
        raise ValueError(f"overlap must satisfy 0 <= overlap < size, got overlap={overlap} size={size}")
    if min_chunk_chars < 0:
        raise ValueError(f"min_chunk_chars must be >= 0, got {min_chunk_chars}")

    if not text:
        return []

    step   = size - overlap
    length = len(text)
    bounds: list[tuple[int, int]] = []

    start = 0
    while True:
        end = min(start + size, length)
        bounds.append((start, end))
        if end == length:
            break
        start += step

    # Fold a degenerate tail into its predecessor.
    if len(bounds) > 1:
        tail_start, tail_end = bounds[-1]
        if tail_end - tail_start < min_chunk_chars:
            bounds.pop()
            prev_start, _ = bounds[-1]
            bounds[-1] = (prev_start, length)

    spans = [
        TextSpan(sequence_index=i, start=s, end=e, text=text[s:e])
        for i, (s, e) in enumerate(bounds)
    ]
    logger.debug(
        "chunk_text | chars=%d size=%d overlap=%d spans=%d",
        length, size, overlap, len(spans),
    )
    return spans


def reconstruct_text(pieces: Iterable[str], overlap: int) -> str:
    """
    Inverse of chunk_text: concatenate chunk texts in sequence order,
    dropping the leading ``overlap`` characters each span shares with its
    predecessor.
    """
    parts: list[str] = []
    for index, piece in enumerate(pieces):
        parts.append(piece if index == 0 else piece[overlap:])
    return "".join(parts)
