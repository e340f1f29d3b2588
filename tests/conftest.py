from __future__ import annotations

import re
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from parasynth.backends import SynthesisBackend, SynthesisRequest

_FILE_LINE = re.compile(r"^file '(.+)'$")


class FakeBackend(SynthesisBackend):
    """In-process backend: audio is the request text wrapped in markers."""

    name = "fake"
    extension = "mp3"
    copy_suffixes = frozenset({".mp3"})
    default_voice = "fake-voice"

    def __init__(self, recorder: "Recorder") -> None:
        self.recorder = recorder

    def synthesize(self, request: SynthesisRequest) -> bytes:
        return self.recorder.call(request)


class Recorder:
    def __init__(self) -> None:
        self.calls: List[SynthesisRequest] = []
        self.failures: Dict[str, int] = {}
        self.delays: Dict[str, float] = {}
        self.empty: set[str] = set()
        self._lock = threading.Lock()

    def call(self, request: SynthesisRequest) -> bytes:
        with self._lock:
            self.calls.append(request)
            remaining = self.failures.get(request.text, 0)
            if remaining:
                self.failures[request.text] = remaining - 1
        if remaining:
            raise ConnectionError(f"backend unavailable for {request.text!r}")
        time.sleep(self.delays.get(request.text, 0.0))
        if request.text in self.empty:
            return b""
        return f"[{request.voice}|{request.rate}|{request.text}]".encode("utf-8")

    def factory(self) -> SynthesisBackend:
        return FakeBackend(self)

    @property
    def texts(self) -> List[str]:
        with self._lock:
            return [c.text for c in self.calls]


class JoinConcat:
    """Stands in for ffmpeg: joins the manifest's files byte-wise in listed order."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def __call__(self, manifest_path: Path, output_path: Path, transcode: bool) -> str:
        self.calls.append((manifest_path, output_path, transcode))
        parts: List[bytes] = []
        for line in manifest_path.read_text(encoding="utf-8").splitlines():
            m = _FILE_LINE.match(line)
            assert m, f"bad manifest line: {line!r}"
            parts.append((manifest_path.parent / m.group(1)).read_bytes())
        output_path.write_bytes(b"".join(parts))
        return ""


@pytest.fixture()
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture()
def concat() -> JoinConcat:
    return JoinConcat()


@pytest.fixture()
def store(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture()
def write_doc(tmp_path: Path):
    def _write(text: str, name: str = "book.txt", encoding: Optional[str] = "utf-8") -> Path:
        p = tmp_path / name
        p.write_bytes(text.encode(encoding) if encoding else text)
        return p

    return _write
