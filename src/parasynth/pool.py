from __future__ import annotations

import enum
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .errors import SynthesisFailedError, WorkerError

MIN_WORKERS = 1
MAX_WORKERS = 8

_CLOSE = object()


class HandoffMode(enum.Enum):
    SYNC = "sync"
    ASYNC = "async"


def validate_workers(workers: Any) -> int:
    try:
        n = int(workers)
    except (TypeError, ValueError):
        raise ValueError(f"Parallel should be an integer between {MIN_WORKERS}-{MAX_WORKERS}, got {workers!r}")
    if n < MIN_WORKERS or n > MAX_WORKERS:
        raise ValueError(f"Parallel should be between {MIN_WORKERS}-{MAX_WORKERS}, got {n}")
    return n


def handoff_mode_for(workers: int) -> HandoffMode:
    return HandoffMode.SYNC if int(workers) == 1 else HandoffMode.ASYNC


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay retry. ``max_attempts=None`` retries until the call succeeds."""

    delay_seconds: float = 3.0
    max_attempts: Optional[int] = None

    def __post_init__(self) -> None:
        if self.delay_seconds < 0:
            raise ValueError(f"Retry delay must be >= 0, got {self.delay_seconds}")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"Retry max_attempts must be >= 1, got {self.max_attempts}")

    def run(
        self,
        fn: Callable[[], Any],
        on_failure: Optional[Callable[[int, Exception], None]] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        cancel: Optional[threading.Event] = None,
    ) -> Any:
        """Call *fn* until it returns. A set *cancel* event ends the retrying early."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as e:
                if on_failure:
                    on_failure(attempt, e)
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    raise SynthesisFailedError(f"Gave up after {attempt} attempts: {type(e).__name__}: {e}") from e
                if cancel is None:
                    sleep(self.delay_seconds)
                elif cancel.is_set() or cancel.wait(self.delay_seconds):
                    raise SynthesisFailedError(f"Cancelled after {attempt} attempts: {type(e).__name__}: {e}") from e


class WorkPool:
    """Fixed set of worker threads fed from one bounded FIFO queue.

    ``handler_factory`` is called once inside each worker thread and returns the
    callable that handles that worker's jobs, so per-worker resources (a backend
    connection, say) are built on the thread that uses them.

    In ``HandoffMode.SYNC`` every ``submit`` waits for its job to complete before
    returning, which keeps completions in submission order.

    The first handler error sets ``cancel``: workers skip jobs they have not
    started yet, and ``abort`` discards whatever is still queued.
    """

    def __init__(
        self,
        workers: int,
        handler_factory: Callable[[], Callable[[Any], None]],
        *,
        mode: Optional[HandoffMode] = None,
        name: str = "synth",
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.workers = validate_workers(workers)
        self.mode = mode or handoff_mode_for(self.workers)
        self._handler_factory = handler_factory
        self._name = name
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=self.workers)
        self._cond = threading.Condition()
        self._outstanding = 0
        self._errors: List[WorkerError] = []
        self._threads: List[threading.Thread] = []
        self._closed = False
        self.cancel = cancel if cancel is not None else threading.Event()

    @property
    def outstanding(self) -> int:
        with self._cond:
            return self._outstanding

    @property
    def errors(self) -> List[WorkerError]:
        with self._cond:
            return list(self._errors)

    def start(self) -> "WorkPool":
        if self._threads:
            return self
        for i in range(self.workers):
            t = threading.Thread(target=self._run, name=f"{self._name}-{i + 1}", daemon=True)
            t.start()
            self._threads.append(t)
        return self

    def submit(self, job: Any) -> None:
        if self._closed:
            raise RuntimeError("WorkPool is closed")
        if not self._threads:
            self.start()
        self.raise_if_failed()
        with self._cond:
            self._outstanding += 1
        self._queue.put(job)
        if self.mode is HandoffMode.SYNC:
            self.drain()

    def drain(self) -> None:
        with self._cond:
            while self._outstanding > 0 and not self._errors:
                self._cond.wait()
        self.raise_if_failed()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for _ in self._threads:
            self._queue.put(_CLOSE)
        for t in self._threads:
            t.join()

    def abort(self) -> None:
        """Stop after the jobs already running: drop queued jobs, then close."""
        self.cancel.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            with self._cond:
                self._outstanding -= 1
                self._cond.notify_all()
        self.close()

    def raise_if_failed(self) -> None:
        with self._cond:
            first = self._errors[0] if self._errors else None
        if first is not None:
            raise first

    def _run(self) -> None:
        handler: Optional[Callable[[Any], None]] = None
        setup_error: Optional[Exception] = None
        try:
            handler = self._handler_factory()
        except Exception as e:
            setup_error = e
        while True:
            job = self._queue.get()
            if job is _CLOSE:
                return
            try:
                if self.cancel.is_set():
                    continue
                if handler is None:
                    raise RuntimeError(f"worker setup failed: {setup_error}") from setup_error
                handler(job)
            except Exception as e:
                with self._cond:
                    self._errors.append(WorkerError(job, e))
                self.cancel.set()
            finally:
                with self._cond:
                    self._outstanding -= 1
                    self._cond.notify_all()

    def __enter__(self) -> "WorkPool":
        return self.start()

    def __exit__(self, *exc: Any) -> None:
        self.close()
