from __future__ import annotations


class CarveError(Exception):
    pass


class EngineNotFoundError(CarveError, FileNotFoundError):
    pass


class EngineError(CarveError, RuntimeError):
    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class PageCountError(EngineError):
    pass


class WorkerError(CarveError):
    def __init__(self, message: str, *, error_type: str = "") -> None:
        super().__init__(message)
        self.error_type = error_type


class RequestCancelledError(WorkerError):
    pass
