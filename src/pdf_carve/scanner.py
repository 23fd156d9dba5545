from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from .signatures import (
    MARKER_LEAD,
    TERMINATOR_MARKER,
    Buffer,
    is_document_start,
    is_terminator,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ByteRange:
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

    def slice(self, buffer: Buffer) -> bytes:
        return bytes(buffer[self.offset : self.end])


@dataclass
class CandidateDocument:
    start: int
    ends: list[int] = field(default_factory=list)

    def ranges(self) -> list[ByteRange]:
        return [ByteRange(offset=self.start, length=end - self.start) for end in self.ends]


@dataclass(frozen=True)
class ScanProgress:
    fraction: float
    ranges: tuple[ByteRange, ...] | None = None

    @property
    def done(self) -> bool:
        return self.ranges is not None


def iter_scan(buffer: Buffer) -> Iterator[ScanProgress]:
    """Walk the buffer once, yielding progress and finally every candidate range.

    Every terminator closes every document opened before it, so a file with
    nested or appended documents produces one range per (header, terminator)
    pair. Documents that never see a terminator are dropped.
    """
    total = len(buffer)
    candidates: list[CandidateDocument] = []
    cursor = 0
    last_progress = 0.0

    while True:
        position = buffer.find(MARKER_LEAD, cursor)
        if position == -1:
            break

        progress = round(position / total, 2)
        if progress != last_progress:
            yield ScanProgress(fraction=progress)
            last_progress = progress

        if is_document_start(buffer, position):
            candidates.append(CandidateDocument(start=position))
        elif is_terminator(buffer, position):
            end = position + len(TERMINATOR_MARKER)
            for candidate in candidates:
                candidate.ends.append(end)

        cursor = position + 1

    ranges = tuple(byte_range for candidate in candidates for byte_range in candidate.ranges())
    logger.debug(
        "Scanned %d bytes: %d headers, %d candidate ranges",
        total,
        len(candidates),
        len(ranges),
    )
    yield ScanProgress(fraction=1.0, ranges=ranges)


def scan(
    buffer: Buffer,
    on_progress: Callable[[float], None] | None = None,
) -> list[ByteRange]:
    ranges: list[ByteRange] = []
    for event in iter_scan(buffer):
        if on_progress is not None:
            on_progress(event.fraction)
        if event.ranges is not None:
            ranges = list(event.ranges)
    return ranges
