from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .engine import EngineConfig, GhostscriptEngine
from .errors import RequestCancelledError, WorkerError
from .repair import RepairProgress, repair
from .scanner import iter_scan
from .signatures import Buffer

logger = logging.getLogger(__name__)

KIND_INIT = "init"
KIND_SCAN = "scan"
KIND_REPAIR = "repair"
KIND_ERROR = "error"
KIND_CANCELLED = "cancelled"

REQUEST_KINDS = (KIND_INIT, KIND_SCAN, KIND_REPAIR)


@dataclass(frozen=True)
class WorkerMessage:
    kind: str
    request_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    final: bool = False


class Channel:
    """Response stream of a single request.

    Messages arrive in the order the worker produced them and the stream
    ends with exactly one final message: the request's result, an `error`
    message or a `cancelled` message.
    """

    def __init__(self, request_id: str, kind: str) -> None:
        self.request_id = request_id
        self.kind = kind
        self._messages: queue.Queue[WorkerMessage] = queue.Queue()
        self._lock = threading.Lock()
        self._cancelled = False
        self._dispatched = False
        self._finished = False

    def cancel(self) -> bool:
        with self._lock:
            if self._dispatched:
                return False
            self._cancelled = True
            return True

    def _claim(self) -> bool:
        with self._lock:
            if self._cancelled:
                return False
            self._dispatched = True
            return True

    def _put(self, message: WorkerMessage) -> None:
        self._messages.put(message)

    def messages(self, timeout: float | None = None) -> Iterator[WorkerMessage]:
        while not self._finished:
            try:
                message = self._messages.get(timeout=timeout)
            except queue.Empty:
                raise TimeoutError(f"No response for {self.kind} request {self.request_id}") from None
            if message.final:
                self._finished = True
            yield message

    def __iter__(self) -> Iterator[WorkerMessage]:
        return self.messages()

    def result(
        self,
        timeout: float | None = None,
        on_message: Callable[[WorkerMessage], None] | None = None,
    ) -> dict[str, Any]:
        final: WorkerMessage | None = None
        for message in self.messages(timeout=timeout):
            if not message.final and on_message is not None:
                on_message(message)
            final = message
        if final is None:
            raise WorkerError(f"{self.kind} request {self.request_id} was already consumed")
        if final.kind == KIND_CANCELLED:
            raise RequestCancelledError(
                f"{self.kind} request {self.request_id} was cancelled",
                error_type="cancelled",
            )
        if final.kind == KIND_ERROR:
            raise WorkerError(str(final.payload["error"]), error_type=str(final.payload["error_type"]))
        return final.payload


@dataclass
class _Request:
    kind: str
    channel: Channel
    payload: dict[str, Any]


class Worker:
    """One background thread serving init, scan and repair requests in order.

    The Ghostscript engine is created on the first `init` or `repair` and
    kept for the lifetime of the worker. Run several workers to repair
    several ranges at the same time.
    """

    def __init__(
        self,
        engine_factory: Callable[[], GhostscriptEngine] | None = None,
        *,
        config: EngineConfig | None = None,
        name: str = "pdf-carve-worker",
    ) -> None:
        self._engine_factory = engine_factory or (lambda: GhostscriptEngine(config))
        self._engine: GhostscriptEngine | None = None
        self._inbox: queue.Queue[_Request | None] = queue.Queue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._lock = threading.Lock()
        self._started = False
        self._closed = False

    def start(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Worker is closed")
            if not self._started:
                self._thread.start()
                self._started = True

    def close(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            started = self._started
        if not started:
            return
        self._inbox.put(None)
        if wait:
            self._thread.join()

    def __enter__(self) -> Worker:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def submit(self, kind: str, **payload: Any) -> Channel:
        if kind not in REQUEST_KINDS:
            raise ValueError(f"Unknown request kind: {kind}")
        self.start()
        channel = Channel(uuid.uuid4().hex, kind)
        self._inbox.put(_Request(kind=kind, channel=channel, payload=payload))
        return channel

    def init(self) -> Channel:
        return self.submit(KIND_INIT)

    def scan(self, buffer: Buffer) -> Channel:
        return self.submit(KIND_SCAN, buffer=buffer)

    def repair(self, buffer: Buffer, offset: int, length: int) -> Channel:
        return self.submit(KIND_REPAIR, buffer=buffer, offset=offset, length=length)

    def _run(self) -> None:
        try:
            while True:
                request = self._inbox.get()
                if request is None:
                    break
                self._dispatch(request)
        finally:
            if self._engine is not None:
                self._engine.close()
                self._engine = None

    def _dispatch(self, request: _Request) -> None:
        channel = request.channel
        if not channel._claim():
            channel._put(WorkerMessage(KIND_CANCELLED, channel.request_id, final=True))
            return

        handlers = {
            KIND_INIT: self._handle_init,
            KIND_SCAN: self._handle_scan,
            KIND_REPAIR: self._handle_repair,
        }
        try:
            handlers[request.kind](request)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s request %s failed: %s", request.kind, channel.request_id, exc)
            channel._put(
                WorkerMessage(
                    KIND_ERROR,
                    channel.request_id,
                    {"error": str(exc), "error_type": type(exc).__name__},
                    final=True,
                )
            )

    def _ensure_engine(self) -> GhostscriptEngine:
        if self._engine is None:
            self._engine = self._engine_factory()
        self._engine.start()
        return self._engine

    def _handle_init(self, request: _Request) -> None:
        self._ensure_engine()
        request.channel._put(WorkerMessage(KIND_INIT, request.channel.request_id, final=True))

    def _handle_scan(self, request: _Request) -> None:
        channel = request.channel
        for event in iter_scan(request.payload["buffer"]):
            payload: dict[str, Any] = {"progress": event.fraction}
            if event.ranges is not None:
                payload["offsets"] = list(event.ranges)
            channel._put(WorkerMessage(KIND_SCAN, channel.request_id, payload, final=event.done))

    def _handle_repair(self, request: _Request) -> None:
        channel = request.channel
        engine = self._ensure_engine()

        def on_progress(event: RepairProgress) -> None:
            payload: dict[str, Any] = {
                "total_pages": event.total_pages,
                "current_page": event.current_page,
            }
            if event.buffer is not None:
                payload["buffer"] = event.buffer
            channel._put(WorkerMessage(KIND_REPAIR, channel.request_id, payload, final=event.done))

        repair(
            engine,
            request.payload["buffer"],
            request.payload["offset"],
            request.payload["length"],
            on_progress=on_progress,
        )
