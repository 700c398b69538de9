"""Paragraph-aware text segmentation.

Segments are sized for the extraction model's input window. Consecutive
segments share an overlap seeded from the tail of the previous segment so
facts that straddle a boundary are seen whole at least once.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TextIO

from .errors import SegmentationError

DEFAULT_SEGMENT_SIZE = 2000
DEFAULT_OVERLAP = 200
# Longest line the streaming reader accepts.
MAX_LINE_CHARS = 1024 * 1024

_PARAGRAPH_SEP = "\n\n"


@dataclass
class SegmentConfig:
    # size is soft: a single paragraph longer than it is emitted whole
    size: int = DEFAULT_SEGMENT_SIZE
    overlap: int = DEFAULT_OVERLAP

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise ValueError("segment size must be > 0")
        if not 0 <= self.overlap < self.size:
            raise ValueError("overlap must be >= 0 and smaller than the segment size")


def overlap_tail(text: str, n: int) -> str:
    if n <= 0:
        return ""
    if len(text) <= n:
        return text
    return text[-n:]


def split_text(text: str, size: int = DEFAULT_SEGMENT_SIZE, overlap: int = DEFAULT_OVERLAP) -> list[str]:
    cfg = SegmentConfig(size=size, overlap=overlap)
    if len(text) <= cfg.size:
        return [text]

    segments: list[str] = []
    current = ""
    for para in text.split(_PARAGRAPH_SEP):
        para = para.strip()
        if not para:
            continue
        if current and len(current) + len(para) + len(_PARAGRAPH_SEP) > cfg.size:
            segments.append(current)
            current = overlap_tail(current, cfg.overlap)
        current = f"{current}{_PARAGRAPH_SEP}{para}" if current else para
    if current:
        segments.append(current)

    # whitespace only: nothing survived the strip
    if not segments and text:
        segments.append(text)
    return segments


class StreamSegmenter:
    """Incremental segmenter fed one line at a time.

    Holds at most one open paragraph and one active segment, so memory stays
    proportional to the segment size no matter how long the input is.
    """

    def __init__(self, size: int = DEFAULT_SEGMENT_SIZE, overlap: int = DEFAULT_OVERLAP):
        self.cfg = SegmentConfig(size=size, overlap=overlap)
        self._segment: list[str] = []
        self._segment_len = 0
        self._paragraph: list[str] = []

    def _segment_text(self) -> str:
        return "".join(self._segment)

    def _append(self, piece: str) -> None:
        self._segment.append(piece)
        self._segment_len += len(piece)

    def _reset(self, seed: str) -> None:
        self._segment = [seed] if seed else []
        self._segment_len = len(seed)

    def _add_paragraph(self, para: str, sink: Callable[[str], None]) -> None:
        if not para:
            return
        if self._segment_len and self._segment_len + len(para) + len(_PARAGRAPH_SEP) > self.cfg.size:
            full = self._segment_text()
            sink(full)
            self._reset(overlap_tail(full, self.cfg.overlap))
        if self._segment_len:
            self._append(_PARAGRAPH_SEP)
        self._append(para)

    def feed(self, line: str, sink: Callable[[str], None]) -> None:
        if not line.strip():
            if self._paragraph:
                para = "\n".join(self._paragraph)
                self._paragraph = []
                self._add_paragraph(para, sink)
            return
        self._paragraph.append(line)

    def flush(self, sink: Callable[[str], None]) -> None:
        if self._paragraph:
            para = "\n".join(self._paragraph)
            self._paragraph = []
            self._add_paragraph(para, sink)
        if self._segment_len:
            sink(self._segment_text())
            self._reset("")


def iter_segments(
    stream: TextIO,
    size: int = DEFAULT_SEGMENT_SIZE,
    overlap: int = DEFAULT_OVERLAP,
    *,
    max_line: int = MAX_LINE_CHARS,
) -> Iterator[str]:
    """Yield segments from a text stream without reading it all into memory.

    Unlike :func:`split_text`, input is never passed through verbatim, even
    when it fits in one segment: paragraphs are rebuilt from lines, runs of
    blank lines collapse to one separator, CRLF line endings are normalised and
    trailing newlines are dropped. Empty or whitespace-only input yields no
    segments at all.
    """
    seg = StreamSegmenter(size=size, overlap=overlap)
    ready: deque[str] = deque()
    lineno = 0
    while True:
        line = stream.readline(max_line + 1)
        if not line:
            break
        lineno += 1
        if len(line) > max_line and not line.endswith("\n"):
            raise SegmentationError(f"line {lineno} exceeds {max_line} characters")
        seg.feed(line.rstrip("\r\n"), ready.append)
        while ready:
            yield ready.popleft()
    seg.flush(ready.append)
    while ready:
        yield ready.popleft()
