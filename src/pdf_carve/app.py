from __future__ import annotations

import argparse
import logging
import queue
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any

from .engine import EngineConfig, resolve_executable
from .errors import CarveError
from .scanner import ByteRange
from .verify import count_pages
from .worker import Worker, WorkerMessage

_SIZE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")
_PDF_SETTINGS = ("/default", "/screen", "/ebook", "/printer", "/prepress")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdf-carve",
        description=(
            "Find PDF documents that were appended to each other or cut short inside one file "
            "and rewrite them into standalone PDFs with Ghostscript."
        ),
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--quiet", action="store_true", help="Do not print progress")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan_parser = subparsers.add_parser("scan", help="List candidate PDF documents in a file")
    scan_parser.add_argument("input_file", type=Path, help="Path to damaged file")
    scan_parser.add_argument(
        "--min-length",
        type=int,
        default=0,
        help="Hide candidates shorter than this many bytes (default: 0)",
    )

    extract_parser = subparsers.add_parser(
        "extract",
        help="Write one candidate's raw bytes without repairing them",
    )
    extract_parser.add_argument("input_file", type=Path, help="Path to damaged file")
    extract_parser.add_argument("index", type=int, help="Candidate number as printed by scan")
    extract_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output path (default: <input>_<index>_0x<offset>.pdf)",
    )

    repair_parser = subparsers.add_parser(
        "repair",
        help="Rewrite candidates into standalone PDFs with Ghostscript",
    )
    repair_parser.add_argument("input_file", type=Path, help="Path to damaged file")
    repair_parser.add_argument(
        "indexes",
        type=int,
        nargs="*",
        help="Candidate numbers as printed by scan",
    )
    repair_parser.add_argument("--all", action="store_true", help="Repair every candidate")
    repair_parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for repaired files (default: next to the input)",
    )
    repair_parser.add_argument(
        "--jobs",
        type=int,
        default=1,
        help="Number of candidates repaired at the same time (default: 1)",
    )
    repair_parser.add_argument(
        "--gs",
        default=None,
        help="Ghostscript executable (default: $PDF_CARVE_GS or gs from PATH)",
    )
    repair_parser.add_argument(
        "--pdf-settings",
        choices=_PDF_SETTINGS,
        default="/prepress",
        help="Ghostscript pdfwrite preset (default: /prepress)",
    )
    repair_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Kill Ghostscript after this many seconds per call (default: no limit)",
    )
    return parser


def _format_offset(offset: int) -> str:
    return f"0x{offset:08x}"


def _format_size(size: int) -> str:
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {_SIZE_UNITS[unit]}"


def _default_raw_path(input_file: Path, index: int, byte_range: ByteRange) -> Path:
    return input_file.with_name(f"{input_file.stem}_{index}_{_format_offset(byte_range.offset)}.pdf")


def _default_repaired_path(output_dir: Path, input_file: Path, index: int) -> Path:
    return output_dir / f"{input_file.stem}_{index}_repaired.pdf"


def _read_input(input_file: Path) -> bytes:
    if not input_file.exists():
        raise FileNotFoundError(f"Input file not found: {input_file}")
    if not input_file.is_file():
        raise ValueError(f"Input path is not a file: {input_file}")
    return input_file.read_bytes()


def _scan_buffer(worker: Worker, buffer: bytes, *, quiet: bool) -> list[ByteRange]:
    def on_message(message: WorkerMessage) -> None:
        if quiet:
            return
        percent = int(message.payload["progress"] * 100)
        print(f"\rScanning: {percent}%", end="", file=sys.stderr, flush=True)

    payload = worker.scan(buffer).result(on_message=on_message)
    if not quiet:
        print("\rScanning: 100%", file=sys.stderr)
    return list(payload["offsets"])


def _select_ranges(
    ranges: list[ByteRange],
    indexes: list[int],
    select_all: bool,
) -> list[tuple[int, ByteRange]]:
    if select_all:
        return list(enumerate(ranges))
    if not indexes:
        raise ValueError("Choose candidate numbers to repair or pass --all")
    selected: list[tuple[int, ByteRange]] = []
    for index in indexes:
        if not 0 <= index < len(ranges):
            raise ValueError(f"No candidate #{index}; the file has {len(ranges)} candidates")
        selected.append((index, ranges[index]))
    return selected


def _print_table(ranges: list[ByteRange], min_length: int) -> None:
    shown = [(index, item) for index, item in enumerate(ranges) if item.length >= min_length]
    if not shown:
        print("No PDF documents found.")
        return

    print(f"{'#':>4}  {'Offset':<10}  {'Length':>12}  Size")
    for index, item in shown:
        print(
            f"{index:>4}  {_format_offset(item.offset):<10}  {item.length:>12}  "
            f"{_format_size(item.length)}"
        )


def _run_scan(args: argparse.Namespace) -> int:
    if args.min_length < 0:
        raise ValueError("--min-length must be >= 0")
    buffer = _read_input(args.input_file)
    with Worker() as worker:
        ranges = _scan_buffer(worker, buffer, quiet=args.quiet)
    _print_table(ranges, args.min_length)
    return 0


def _run_extract(args: argparse.Namespace) -> int:
    buffer = _read_input(args.input_file)
    with Worker() as worker:
        ranges = _scan_buffer(worker, buffer, quiet=args.quiet)
    index, byte_range = _select_ranges(ranges, [args.index], select_all=False)[0]

    output = args.output or _default_raw_path(args.input_file, index, byte_range)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(byte_range.slice(buffer))
    print(f"Done: candidate #{index} ({_format_size(byte_range.length)}) written to {output}")
    return 0


def _repair_one(
    workers: queue.Queue[Worker],
    buffer: bytes,
    index: int,
    byte_range: ByteRange,
    output_path: Path,
    *,
    quiet: bool,
) -> dict[str, Any]:
    def on_message(message: WorkerMessage) -> None:
        if quiet:
            return
        total_pages = message.payload["total_pages"]
        current_page = message.payload["current_page"]
        if current_page is None:
            print(f"[#{index}] {total_pages} pages")
        else:
            print(f"[#{index}] page {current_page}/{total_pages}")

    worker = workers.get()
    try:
        payload = worker.repair(buffer, byte_range.offset, byte_range.length).result(
            on_message=on_message
        )
    finally:
        workers.put(worker)

    data: bytes = payload["buffer"]
    counted_pages = count_pages(data)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(data)
    return {
        "output_path": output_path,
        "total_pages": payload["total_pages"],
        "counted_pages": counted_pages,
    }


def _run_repair(args: argparse.Namespace) -> int:
    if args.jobs < 1:
        raise ValueError("--jobs must be >= 1")
    if args.timeout is not None and args.timeout <= 0:
        raise ValueError("--timeout must be > 0")

    executable = resolve_executable(args.gs)
    config = EngineConfig(
        executable=executable,
        pdf_settings=args.pdf_settings,
        timeout=args.timeout,
    )
    buffer = _read_input(args.input_file)
    output_dir: Path = args.output_dir or args.input_file.parent

    workers: queue.Queue[Worker] = queue.Queue()
    all_workers: list[Worker] = []
    try:
        scanner = Worker(config=config, name="pdf-carve-worker-0")
        all_workers.append(scanner)
        ranges = _scan_buffer(scanner, buffer, quiet=args.quiet)
        selected = _select_ranges(ranges, args.indexes, args.all)
        if not selected:
            print("No PDF documents found.")
            return 0

        workers.put(scanner)
        worker_count = min(args.jobs, len(selected))
        for number in range(1, worker_count):
            worker = Worker(config=config, name=f"pdf-carve-worker-{number}")
            all_workers.append(worker)
            workers.put(worker)

        failures = 0
        with ThreadPoolExecutor(max_workers=worker_count) as pool:
            futures = {
                pool.submit(
                    _repair_one,
                    workers,
                    buffer,
                    index,
                    byte_range,
                    _default_repaired_path(output_dir, args.input_file, index),
                    quiet=args.quiet,
                ): index
                for index, byte_range in selected
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    result = future.result()
                except (CarveError, OSError, ValueError) as exc:
                    failures += 1
                    print(f"Error: repair of candidate #{index} failed: {exc}", file=sys.stderr)
                    continue

                print(
                    f"Done: candidate #{index} repaired to {result['output_path']} "
                    f"({result['counted_pages']} pages)"
                )
                if result["counted_pages"] != result["total_pages"]:
                    print(
                        f"Warning: candidate #{index} reported {result['total_pages']} pages "
                        f"but the output has {result['counted_pages']}",
                        file=sys.stderr,
                    )
    finally:
        for worker in all_workers:
            worker.close()

    return 1 if failures else 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.ERROR,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "scan": _run_scan,
        "extract": _run_extract,
        "repair": _run_repair,
    }
    try:
        return commands[args.command](args)
    except (FileNotFoundError, RuntimeError, ValueError, CarveError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
