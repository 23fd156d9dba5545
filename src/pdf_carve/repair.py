from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .engine import GhostscriptEngine
from .errors import PageCountError
from .signatures import Buffer

logger = logging.getLogger(__name__)

PAGE_PREFIX = "Page "


@dataclass(frozen=True)
class RepairProgress:
    total_pages: int | None = None
    current_page: int | None = None
    buffer: bytes | None = None

    @property
    def done(self) -> bool:
        return self.buffer is not None


def page_count_args(input_name: str) -> list[str]:
    return [
        "-q",
        "-dNODISPLAY",
        f"--permit-file-read={input_name}",
        "-c",
        f"({input_name}) (r) file runpdfbegin pdfpagecount = quit",
    ]


def rewrite_args(input_name: str, output_name: str, pdf_settings: str) -> list[str]:
    return [
        "-o",
        output_name,
        "-sDEVICE=pdfwrite",
        f"-dPDFSETTINGS={pdf_settings}",
        input_name,
    ]


def parse_page_count(lines: list[str]) -> int:
    output = [line.strip() for line in lines if line.strip()]
    if not output:
        raise PageCountError("Ghostscript reported no page count")
    # Repair warnings for damaged files come before the count.
    for line in reversed(output):
        if line.isascii() and line.isdigit():
            return int(line)
    raise PageCountError(f"Unexpected page count output: {output[0]!r}")


def parse_page_line(line: str) -> int | None:
    if not line.startswith(PAGE_PREFIX):
        return None
    value = line[len(PAGE_PREFIX) :].strip()
    if not value.isdigit():
        return None
    return int(value)


def _validate_range(buffer: Buffer, offset: int, length: int) -> None:
    if offset < 0:
        raise ValueError("offset must be >= 0")
    if length < 1:
        raise ValueError("length must be >= 1")
    if offset + length > len(buffer):
        raise ValueError(
            f"Range 0x{offset:08x}+{length} is outside of the {len(buffer)} byte buffer"
        )


def repair(
    engine: GhostscriptEngine,
    buffer: Buffer,
    offset: int,
    length: int,
    on_progress: Callable[[RepairProgress], None] | None = None,
) -> bytes:
    """Rewrite one candidate range into a standalone PDF.

    Runs write, page count, rewrite and read-back strictly in order.
    `on_progress` receives the page total first, then rewrite progress, and
    finally an event carrying the repaired bytes.
    """
    _validate_range(buffer, offset, length)

    def emit(event: RepairProgress) -> None:
        if on_progress is not None:
            on_progress(event)

    config = engine.config
    engine.write_file(config.input_name, bytes(buffer[offset : offset + length]))
    engine.remove_file(config.output_name)
    logger.debug("Repairing range 0x%08x+%d", offset, length)

    count_lines: list[str] = []
    engine.run(page_count_args(config.input_name), on_line=count_lines.append)
    total_pages = parse_page_count(count_lines)
    emit(RepairProgress(total_pages=total_pages))

    current_page = 0

    def on_rewrite_line(line: str) -> None:
        nonlocal current_page
        page = parse_page_line(line)
        if page is None:
            return
        page = min(page, total_pages)
        if page < current_page:
            return
        current_page = page
        emit(RepairProgress(total_pages=total_pages, current_page=page))

    engine.run(
        rewrite_args(config.input_name, config.output_name, config.pdf_settings),
        on_line=on_rewrite_line,
    )

    result = engine.read_file(config.output_name)
    logger.debug("Repaired range 0x%08x+%d: %d pages, %d bytes", offset, length, total_pages, len(result))
    emit(RepairProgress(total_pages=total_pages, current_page=total_pages, buffer=result))
    return result
