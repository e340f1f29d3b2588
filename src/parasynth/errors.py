from __future__ import annotations

from typing import Any


class ParasynthError(RuntimeError):
    pass


class DocumentEncodingError(ParasynthError, ValueError):
    pass


class MissingToolError(ParasynthError):
    pass


class CacheError(ParasynthError):
    pass


class NothingToSynthesizeError(ParasynthError):
    pass


class SynthesisFailedError(ParasynthError):
    pass


class WorkerError(ParasynthError):
    """A job handler raised inside a worker thread."""

    def __init__(self, job: Any, error: BaseException) -> None:
        super().__init__(f"{type(error).__name__}: {error}")
        self.job = job
        self.error = error


class ConcatError(ParasynthError):
    def __init__(self, message: str, *, output: str = "", returncode: int = 1) -> None:
        super().__init__(message)
        self.output = output
        self.returncode = returncode
