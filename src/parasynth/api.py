from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Optional

from . import pipeline
from .backends import SynthesisBackend, make_backend_factory


class Parasynth:
    """Programmatic API over pipeline functions for scripting and service integration."""

    def __init__(
        self,
        *,
        backend: str = pipeline.DEFAULT_BACKEND,
        store_dir: Optional[str] = None,
        backend_factory: Optional[Callable[[], SynthesisBackend]] = None,
    ) -> None:
        self.backend = backend
        self.store_dir = Path(store_dir).expanduser() if store_dir else None
        self.backend_factory = backend_factory

    def synth(
        self,
        input_path: str,
        *,
        output_path: Optional[str] = None,
        voice: Optional[str] = None,
        rate: str = pipeline.DEFAULT_RATE,
        parallel: int = 1,
        convert: bool = False,
        work_dir: Optional[str] = None,
        link_mode: str = "auto",
        retry_delay_seconds: float = 3.0,
        max_attempts: Optional[int] = None,
        request_timeout_seconds: Optional[float] = None,
        sidecar: bool = True,
        concatenator: Optional[Callable[[Path, Path, bool], str]] = None,
        progress_cb=None,
        info_cb=None,
        warn_cb=None,
    ) -> Dict[str, Any]:
        factory = self.backend_factory or make_backend_factory(
            self.backend, voice=voice, request_timeout_seconds=request_timeout_seconds
        )
        return pipeline.synth(
            Path(input_path).expanduser(),
            output_path=Path(output_path).expanduser() if output_path else None,
            voice=voice,
            rate=rate,
            workers=parallel,
            backend=self.backend,
            backend_factory=factory,
            store_dir=self.store_dir,
            work_root=Path(work_dir).expanduser() if work_dir else None,
            link_mode=link_mode,
            convert=convert,
            retry_delay_seconds=retry_delay_seconds,
            max_attempts=max_attempts,
            emit_sidecar=sidecar,
            concatenator=concatenator,
            progress_cb=progress_cb,
            info_cb=info_cb,
            warn_cb=warn_cb,
        )

    def plan(self, input_path: str, *, voice: Optional[str] = None, rate: str = pipeline.DEFAULT_RATE) -> Dict[str, Any]:
        return pipeline.plan(
            Path(input_path).expanduser(),
            voice=voice,
            rate=rate,
            backend=self.backend,
            store_dir=self.store_dir,
        )
