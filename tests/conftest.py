from __future__ import annotations

import io
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from pdf_carve.engine import GS_ENV_VAR, EngineConfig
from pdf_carve.errors import EngineError


class _FakeProcess:
    def __init__(self, stdout: bytes, returncode: int, stderr: bytes, stderr_sink) -> None:  # noqa: ANN001
        self.stdout = io.BytesIO(stdout)
        self.returncode = returncode
        self.killed = False
        stderr_sink.write(stderr)

    def wait(self) -> int:
        return self.returncode

    def kill(self) -> None:
        self.killed = True


class FakeGhostscript:
    """Stands in for the gs binary behind subprocess.Popen."""

    def __init__(self) -> None:
        self.page_count_stdout = b"2\n"
        self.rewrite_stdout = b"Processing pages 1 through 2.\nPage 1\nPage 2\n"
        self.rewrite_returncode = 0
        self.rewrite_stderr = b""
        self.output = b"%PDF-1.7\nrepaired\n%%EOF\n"
        self.commands: list[list[str]] = []
        self.inputs: list[bytes] = []
        self.cwds: list[Path] = []

    def popen(self, cmd, *, cwd, stdin, stdout, stderr):  # noqa: ANN001
        self.commands.append(list(cmd))
        workdir = Path(cwd)
        self.cwds.append(workdir)
        if "-dNODISPLAY" in cmd:
            self.inputs.append((workdir / "input.pdf").read_bytes())
            return _FakeProcess(self.page_count_stdout, 0, b"", stderr)
        if self.rewrite_returncode == 0:
            (workdir / cmd[cmd.index("-o") + 1]).write_bytes(self.output)
        return _FakeProcess(self.rewrite_stdout, self.rewrite_returncode, self.rewrite_stderr, stderr)


class FakeEngine:
    """In-memory engine used by repair and worker tests."""

    def __init__(self) -> None:
        self.config = EngineConfig()
        self.page_count_lines: list[str] = ["3"]
        self.rewrite_lines: list[str] = ["Processing pages 1 through 3.", "Page 1", "Page 2", "Page 3"]
        self.fail_rewrite = False
        self.gate: threading.Event | None = None
        self.files: dict[str, bytes] = {}
        self.commands: list[list[str]] = []
        self.ready = False
        self.setups = 0
        self.closed = False

    def start(self) -> None:
        if self.ready:
            return
        self.ready = True
        self.setups += 1

    def close(self) -> None:
        self.ready = False
        self.closed = True

    def write_file(self, name: str, data: bytes) -> None:
        self.files[name] = data

    def read_file(self, name: str) -> bytes:
        return self.files[name]

    def remove_file(self, name: str) -> None:
        self.files.pop(name, None)

    def run(self, args, on_line=None) -> None:  # noqa: ANN001
        self.commands.append(list(args))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if "-dNODISPLAY" in args:
            lines = self.page_count_lines
        else:
            if self.fail_rewrite:
                raise EngineError("Ghostscript failed with exit code 1", returncode=1)
            self.files[self.config.output_name] = b"fixed:" + self.files[self.config.input_name]
            lines = self.rewrite_lines
        for line in lines:
            if on_line is not None:
                on_line(line)


@pytest.fixture
def fake_gs(monkeypatch) -> FakeGhostscript:  # noqa: ANN001
    fake = FakeGhostscript()
    monkeypatch.delenv(GS_ENV_VAR, raising=False)
    monkeypatch.setattr(
        "pdf_carve.engine.shutil.which",
        lambda name: name if name.startswith("/") else f"/usr/bin/{name}",
    )
    monkeypatch.setattr("pdf_carve.engine.subprocess.Popen", fake.popen)
    return fake


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()
