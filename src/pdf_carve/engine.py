from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import EngineError, EngineNotFoundError

logger = logging.getLogger(__name__)

GS_ENV_VAR = "PDF_CARVE_GS"
_READ_CHUNK = 64 * 1024
_STDERR_TAIL_LINES = 20


@dataclass
class EngineConfig:
    executable: str | None = None
    input_name: str = "input.pdf"
    output_name: str = "output.pdf"
    pdf_settings: str = "/prepress"
    timeout: float | None = None


def resolve_executable(executable: str | None = None) -> str:
    candidate = executable or os.environ.get(GS_ENV_VAR) or "gs"
    resolved = shutil.which(candidate)
    if resolved is None:
        raise EngineNotFoundError(
            f"Ghostscript executable not found: {candidate}. "
            f"Install Ghostscript or point {GS_ENV_VAR} at the gs binary."
        )
    return resolved


class LineAssembler:
    """Collect raw output bytes and release complete lines on each newline."""

    def __init__(self) -> None:
        self._pending = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        self._pending.extend(chunk)
        lines: list[str] = []
        while True:
            newline = self._pending.find(b"\n")
            if newline == -1:
                break
            lines.append(_decode_line(bytes(self._pending[:newline])))
            del self._pending[: newline + 1]
        return lines

    def flush(self) -> list[str]:
        if not self._pending:
            return []
        line = _decode_line(bytes(self._pending))
        self._pending.clear()
        return [line]


def _decode_line(raw: bytes) -> str:
    # Engine output is byte oriented; latin-1 maps every byte to one character.
    return raw.decode("latin-1").rstrip("\r")


class GhostscriptEngine:
    """Ghostscript executable bound to a private scratch directory.

    The scratch directory stands in for the engine's filesystem: inputs are
    written there, the engine runs with it as working directory, and outputs
    are read back from it. Files are addressed by bare names.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or EngineConfig()
        self._executable: str | None = None
        self._workdir: tempfile.TemporaryDirectory[str] | None = None

    @property
    def ready(self) -> bool:
        return self._workdir is not None

    @property
    def root(self) -> Path:
        if self._workdir is None:
            raise RuntimeError("Engine is not started")
        return Path(self._workdir.name)

    def start(self) -> None:
        if self.ready:
            return
        self._executable = resolve_executable(self.config.executable)
        self._workdir = tempfile.TemporaryDirectory(prefix="pdf_carve_gs_")
        logger.debug("Ghostscript engine ready: %s in %s", self._executable, self._workdir.name)

    def close(self) -> None:
        if self._workdir is not None:
            self._workdir.cleanup()
            self._workdir = None

    def __enter__(self) -> GhostscriptEngine:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def write_file(self, name: str, data: bytes) -> None:
        self.start()
        (self.root / name).write_bytes(data)

    def read_file(self, name: str) -> bytes:
        return (self.root / name).read_bytes()

    def remove_file(self, name: str) -> None:
        (self.root / name).unlink(missing_ok=True)

    def run(self, args: Sequence[str], on_line: Callable[[str], None] | None = None) -> None:
        self.start()
        executable = self._executable
        if executable is None:
            raise RuntimeError("Engine is not started")
        cmd = [executable, *args]
        timeout = self.config.timeout
        logger.debug("Running %s", cmd)

        assembler = LineAssembler()
        with tempfile.TemporaryFile() as stderr_sink:
            process = subprocess.Popen(
                cmd,
                cwd=self.root,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=stderr_sink,
            )
            stdout = process.stdout
            if stdout is None:
                process.kill()
                process.wait()
                raise RuntimeError("Ghostscript stdout is not captured")

            timed_out = threading.Event()

            def kill_on_timeout() -> None:
                timed_out.set()
                process.kill()

            timer: threading.Timer | None = None
            if timeout is not None:
                timer = threading.Timer(timeout, kill_on_timeout)
                timer.daemon = True
                timer.start()
            try:
                while chunk := stdout.read1(_READ_CHUNK):
                    for line in assembler.feed(chunk):
                        if on_line is not None:
                            on_line(line)
                for line in assembler.flush():
                    if on_line is not None:
                        on_line(line)
                returncode = process.wait()
            except BaseException:
                process.kill()
                process.wait()
                raise
            finally:
                if timer is not None:
                    timer.cancel()
                stdout.close()

            if timed_out.is_set():
                raise EngineError(
                    f"Ghostscript timed out after {timeout:g} seconds",
                    returncode=returncode,
                )

            if returncode != 0:
                stderr_sink.seek(0)
                stderr = stderr_sink.read().decode("latin-1")
                tail = "\n".join(stderr.splitlines()[-_STDERR_TAIL_LINES:])
                raise EngineError(
                    f"Ghostscript failed with exit code {returncode}" + (f": {tail}" if tail else ""),
                    returncode=returncode,
                    stderr=stderr,
                )
