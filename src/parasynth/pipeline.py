from __future__ import annotations

import hashlib
import json
import os
import shutil
import subprocess
import threading
import time
import unicodedata
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .backends import BACKENDS, SynthesisBackend, SynthesisRequest, make_backend_factory, rate_multiplier
from .errors import CacheError, ConcatError, DocumentEncodingError, MissingToolError, NothingToSynthesizeError
from .pool import RetryPolicy, WorkPool, handoff_mode_for, validate_workers

DEFAULT_BACKEND = "edge"
DEFAULT_RATE = "1"
MANIFEST_NAME = "index"
SIDECAR_NAME = "plan.json"
LINK_MODES = ("auto", "symlink", "hardlink", "copy")

ProgressCb = Callable[[str, int, int, str], None]
InfoCb = Callable[[str], None]


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def default_store_dir() -> Path:
    explicit = os.getenv("PARASYNTH_STORE")
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".cache" / "parasynth" / "store"


@dataclass
class Unit:
    index: int
    text: str
    skip: bool = False
    fingerprint: Optional[str] = None
    slot_name: Optional[str] = None
    status: str = "pending"


def decode_document(data: bytes) -> str:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DocumentEncodingError(f"Invalid utf-8 sequence at byte {e.start}") from e
    return text[1:] if text.startswith("\ufeff") else text


def detect_separator(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def is_pronounceable(text: str) -> bool:
    """True when *text* holds at least one letter (Unicode category L*) of any script."""
    return any(unicodedata.category(ch).startswith("L") for ch in text or "")


def _check_field(label: str, value: str) -> None:
    if "|" in value:
        raise ValueError(f"{label} must not contain '|': {value!r}")


def fingerprint(voice: str, rate: str, text: str) -> str:
    _check_field("voice", voice)
    _check_field("rate", rate)
    return hashlib.sha256(f"{voice}|{rate}|{text}".encode("utf-8")).hexdigest()


def plan_units(text: str, *, voice: str, rate: str, extension: str) -> List[Unit]:
    units: List[Unit] = []
    for idx, raw in enumerate(text.split(detect_separator(text)), start=1):
        t = raw.strip()
        if not is_pronounceable(t):
            units.append(Unit(index=idx, text=t, skip=True, status="empty"))
            continue
        units.append(
            Unit(
                index=idx,
                text=t,
                fingerprint=fingerprint(voice, rate, t),
                slot_name=f"{idx}.{extension}",
            )
        )
    return units


class ContentCache:
    """Write-once audio blobs at ``<root>/<hex fingerprint>``.

    Nothing is held in memory: a blob's presence on disk is the cache state.
    """

    def __init__(self, root: Path, *, link_mode: str = "auto") -> None:
        if link_mode not in LINK_MODES:
            raise ValueError(f"Invalid link mode '{link_mode}'. Valid: {', '.join(LINK_MODES)}")
        self.root = Path(root).expanduser()
        self.link_mode = link_mode

    def ensure_root(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Could not create cache store {self.root}: {e}") from e
        return self.root

    def path_for(self, fp: str) -> Path:
        return self.root / fp

    def lookup(self, fp: str) -> Optional[Path]:
        p = self.path_for(fp)
        return p if p.is_file() else None

    def materialize(self, fp: str, slot: Path) -> bool:
        src = self.lookup(fp)
        if src is None:
            return False
        self.link(src, slot)
        return True

    def store(self, fp: str, audio: bytes, slot: Path) -> Path:
        if not audio:
            raise CacheError(f"Refusing to cache empty audio for {fp}")
        path = self.path_for(fp)
        if not path.exists():
            tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
            try:
                tmp.write_bytes(audio)
                os.replace(tmp, path)
            except OSError as e:
                tmp.unlink(missing_ok=True)
                raise CacheError(f"Could not write cache blob {path}: {e}") from e
        self.link(path, slot)
        return path

    def link(self, source: Path, slot: Path) -> None:
        strategies: Dict[str, List[Callable[[str, str], Any]]] = {
            "symlink": [os.symlink],
            "hardlink": [os.link],
            "copy": [shutil.copyfile],
            "auto": [os.symlink, os.link, shutil.copyfile],
        }
        src = str(Path(source).absolute())
        last_err: Optional[OSError] = None
        for make in strategies[self.link_mode]:
            try:
                make(src, str(slot))
                return
            except OSError as e:
                last_err = e
        raise CacheError(f"Could not materialize {slot} from {src}: {last_err}") from last_err


class InflightRegistry:
    """Tracks fingerprints with a synthesis in flight.

    ``claim`` checks the registry and the cache under one lock, so a duplicate
    unit either finds the finished blob or waits on the owning job; it is never
    dispatched a second time.
    """

    OWN = "own"
    HIT = "hit"
    WAIT = "wait"

    def __init__(self, cache: ContentCache) -> None:
        self._cache = cache
        self._lock = threading.Lock()
        self._waiters: Dict[str, List[Unit]] = {}

    def claim(self, unit: Unit) -> str:
        fp = unit.fingerprint or ""
        with self._lock:
            if fp in self._waiters:
                self._waiters[fp].append(unit)
                return self.WAIT
            if self._cache.lookup(fp) is not None:
                return self.HIT
            self._waiters[fp] = []
            return self.OWN

    def release(self, fp: str) -> List[Unit]:
        with self._lock:
            return self._waiters.pop(fp, [])


class Manifest:
    """ffmpeg concat list, written in document order while units are planned."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.entries: List[str] = []
        self._fh = path.open("w", encoding="utf-8")

    def add(self, unit: Unit) -> None:
        if unit.skip or not unit.slot_name:
            return
        self._fh.write(f"file '{unit.slot_name}'\n")
        self._fh.flush()
        self.entries.append(unit.slot_name)

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()

    def __enter__(self) -> "Manifest":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def resolve_ffmpeg(explicit: Optional[str] = None, *, transcode: bool = False) -> str:
    if explicit:
        found = shutil.which(explicit) or (explicit if Path(explicit).expanduser().is_file() else None)
        if not found:
            raise MissingToolError(f"ffmpeg not found at {explicit}")
        return str(found)
    full = shutil.which("ffmpeg")
    if full:
        return full
    minimal = shutil.which("ffmpeg-min")
    if minimal:
        if transcode:
            raise MissingToolError("external ffmpeg not found (ffmpeg-min only supports stream copy)")
        return minimal
    raise MissingToolError("ffmpeg not found")


@dataclass
class FFmpegConcatenator:
    executable: str = "ffmpeg"

    def __call__(self, manifest_path: Path, output_path: Path, transcode: bool) -> str:
        cmd = [
            self.executable,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(manifest_path),
        ]
        if not transcode:
            cmd += ["-c", "copy"]
        cmd.append(str(output_path))
        p = subprocess.run(cmd, capture_output=True, text=True)
        out = ((p.stdout or "") + (p.stderr or "")).strip()
        if p.returncode != 0:
            raise ConcatError(f"ffmpeg exited with code {p.returncode}: {out}", output=out, returncode=p.returncode)
        return out


class _Reporter:
    def __init__(
        self,
        total: int,
        progress_cb: Optional[ProgressCb],
        info_cb: Optional[InfoCb],
        warn_cb: Optional[InfoCb] = None,
    ) -> None:
        self.total = total
        self.done = 0
        self._progress_cb = progress_cb
        self._info_cb = info_cb
        self._warn_cb = warn_cb or info_cb
        self._lock = threading.Lock()

    def finished(self, unit: Unit, qualifier: str = "") -> None:
        msg = f"Finished: {unit.index}/{self.total}" + (f" ({qualifier})" if qualifier else "")
        with self._lock:
            self.done += 1
            if self._progress_cb:
                self._progress_cb("synth_units", self.done, self.total, msg)

    def info(self, message: str) -> None:
        with self._lock:
            if self._info_cb:
                self._info_cb(message)

    def warn(self, message: str) -> None:
        with self._lock:
            if self._warn_cb:
                self._warn_cb(message)


@dataclass
class SynthContext:
    voice: str
    rate: str
    work_dir: Path
    cache: ContentCache
    inflight: InflightRegistry
    retry: RetryPolicy
    backend_factory: Callable[[], SynthesisBackend]
    reporter: _Reporter
    cancel: threading.Event = field(default_factory=threading.Event)
    stats: Dict[str, int] = field(default_factory=lambda: {"backend_calls": 0, "synthesized": 0})
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def count(self, key: str) -> None:
        with self._lock:
            self.stats[key] += 1


class SynthesisWorker:
    def __init__(self, ctx: SynthContext) -> None:
        self.ctx = ctx
        self.backend = ctx.backend_factory()

    def _call(self, request: SynthesisRequest) -> bytes:
        self.ctx.count("backend_calls")
        return self.backend.synthesize(request)

    def __call__(self, unit: Unit) -> None:
        ctx = self.ctx
        request = SynthesisRequest(voice=ctx.voice, rate=ctx.rate, text=unit.text)

        def on_failure(attempt: int, exc: Exception) -> None:
            ctx.reporter.warn(
                f"synth retry unit={unit.index}/{ctx.reporter.total} attempt={attempt} err={type(exc).__name__}: {exc}"
            )

        audio = ctx.retry.run(lambda: self._call(request), on_failure, cancel=ctx.cancel)
        blob = ctx.cache.store(unit.fingerprint or "", audio, ctx.work_dir / (unit.slot_name or ""))
        ctx.count("synthesized")
        unit.status = "synth"
        ctx.reporter.finished(unit)
        for waiter in ctx.inflight.release(unit.fingerprint or ""):
            ctx.cache.link(blob, ctx.work_dir / (waiter.slot_name or ""))
            waiter.status = "dedup"
            ctx.reporter.finished(waiter, "exist")


def _make_work_dir(root: Path, input_name: str) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    while True:
        candidate = root / f"{input_name}.{time.time_ns():x}"
        try:
            candidate.mkdir()
            return candidate
        except FileExistsError:
            continue


def _write_sidecar(path: Path, *, source: Path, backend: str, voice: str, rate: str, workers: int, units: List[Unit]) -> None:
    payload = {
        "schema": "parasynth.plan.v1",
        "source": source.name,
        "source_sha256": _sha256(source),
        "backend": backend,
        "voice": voice,
        "rate": rate,
        "workers": workers,
        "units": [
            {
                "index": u.index,
                "skip": u.skip,
                "fingerprint": u.fingerprint,
                "slot": u.slot_name,
                "status": u.status,
            }
            for u in units
        ],
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def synth(
    input_path: Path,
    *,
    output_path: Optional[Path] = None,
    voice: Optional[str] = None,
    rate: str = DEFAULT_RATE,
    workers: int = 1,
    backend: str = DEFAULT_BACKEND,
    backend_factory: Optional[Callable[[], SynthesisBackend]] = None,
    store_dir: Optional[Path] = None,
    work_root: Optional[Path] = None,
    link_mode: str = "auto",
    convert: bool = False,
    retry_delay_seconds: float = 3.0,
    max_attempts: Optional[int] = None,
    request_timeout_seconds: Optional[float] = None,
    emit_sidecar: bool = True,
    ffmpeg: Optional[str] = None,
    concatenator: Optional[Callable[[Path, Path, bool], str]] = None,
    progress_cb: Optional[ProgressCb] = None,
    info_cb: Optional[InfoCb] = None,
    warn_cb: Optional[InfoCb] = None,
) -> Dict[str, Any]:
    workers = validate_workers(workers)
    retry = RetryPolicy(delay_seconds=float(retry_delay_seconds), max_attempts=max_attempts)
    if backend_factory is None:
        backend_factory = make_backend_factory(backend, voice=voice, request_timeout_seconds=request_timeout_seconds)
    template = backend_factory()
    voice = voice or template.default_voice
    rate = str(rate).strip() or DEFAULT_RATE
    rate_multiplier(rate)
    _check_field("voice", voice)
    _check_field("rate", rate)
    cache = ContentCache(store_dir or default_store_dir(), link_mode=link_mode)

    out = output_path or input_path.with_suffix(f".{template.extension}")
    transcode = bool(convert) or out.suffix.lower() not in template.copy_suffixes
    if concatenator is None:
        concatenator = FFmpegConcatenator(resolve_ffmpeg(ffmpeg, transcode=transcode))

    if not input_path.exists():
        raise FileNotFoundError(input_path)
    text = decode_document(input_path.read_bytes())
    cache.ensure_root()

    units = plan_units(text, voice=voice, rate=rate, extension=template.extension)
    total = len(units)
    workers = min(workers, max(1, total))
    work_dir = _make_work_dir(Path(work_root) if work_root else out.parent, input_path.name)
    reporter = _Reporter(total, progress_cb, info_cb, warn_cb)
    if info_cb:
        info_cb(
            f"synth backend={template.name} voice={voice} rate={rate} workers={workers} units={total} work_dir={work_dir}"
        )

    ctx = SynthContext(
        voice=voice,
        rate=rate,
        work_dir=work_dir,
        cache=cache,
        inflight=InflightRegistry(cache),
        retry=retry,
        backend_factory=backend_factory,
        reporter=reporter,
    )
    pool = WorkPool(workers, lambda: SynthesisWorker(ctx), mode=handoff_mode_for(workers), cancel=ctx.cancel).start()
    cached = 0
    try:
        with Manifest(work_dir / MANIFEST_NAME) as manifest:
            for unit in units:
                manifest.add(unit)
                if unit.skip:
                    reporter.finished(unit, "empty")
                    continue
                claim = ctx.inflight.claim(unit)
                if claim == InflightRegistry.HIT:
                    if not cache.materialize(unit.fingerprint or "", work_dir / (unit.slot_name or "")):
                        raise CacheError(f"Cache blob for unit {unit.index} vanished: {cache.path_for(unit.fingerprint or '')}")
                    unit.status = "exist"
                    cached += 1
                    reporter.finished(unit, "exist")
                elif claim == InflightRegistry.OWN:
                    pool.submit(unit)
        pool.drain()
    except BaseException:
        pool.abort()
        raise
    pool.close()

    sidecar_path = work_dir / SIDECAR_NAME
    if emit_sidecar:
        _write_sidecar(
            sidecar_path, source=input_path, backend=template.name, voice=voice, rate=rate, workers=workers, units=units
        )

    if not manifest.entries:
        raise NothingToSynthesizeError(f"No pronounceable text in {input_path}")

    out.parent.mkdir(parents=True, exist_ok=True)
    tool_output = concatenator(manifest.path, out, transcode)
    if tool_output and info_cb:
        info_cb(tool_output)
    if info_cb:
        info_cb(f"synth done out={out} mode={'transcode' if transcode else 'copy'}")

    return {
        "output": str(out),
        "work_dir": str(work_dir),
        "manifest": str(manifest.path),
        "sidecar": str(sidecar_path) if emit_sidecar else None,
        "backend": template.name,
        "voice": voice,
        "rate": rate,
        "workers": workers,
        "mode": "transcode" if transcode else "copy",
        "units": total,
        "skipped": sum(1 for u in units if u.skip),
        "cached": cached,
        "deduplicated": sum(1 for u in units if u.status == "dedup"),
        "synthesized": ctx.stats["synthesized"],
        "backend_calls": ctx.stats["backend_calls"],
    }


def plan(
    input_path: Path,
    *,
    voice: Optional[str] = None,
    rate: str = DEFAULT_RATE,
    backend: str = DEFAULT_BACKEND,
    extension: Optional[str] = None,
    store_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """Dry run: classify every unit without calling a backend or writing files."""
    key = (backend or "").strip().lower()
    if key not in BACKENDS:
        raise ValueError(f"Unknown backend '{backend}'. Valid: {', '.join(sorted(BACKENDS))}")
    cls = BACKENDS[key]
    voice = voice or cls.default_voice
    rate = str(rate).strip() or DEFAULT_RATE
    rate_multiplier(rate)
    cache = ContentCache(store_dir or default_store_dir())

    if not input_path.exists():
        raise FileNotFoundError(input_path)
    units = plan_units(decode_document(input_path.read_bytes()), voice=voice, rate=rate, extension=extension or cls.extension)
    seen: set[str] = set()
    for u in units:
        if u.skip:
            continue
        fp = u.fingerprint or ""
        if cache.lookup(fp) is not None:
            u.status = "exist"
        elif fp in seen:
            u.status = "dedup"
        else:
            u.status = "synth"
        seen.add(fp)

    return {
        "source": str(input_path),
        "backend": key,
        "voice": voice,
        "rate": rate,
        "store": str(cache.root),
        "units": len(units),
        "skipped": sum(1 for u in units if u.skip),
        "cached": sum(1 for u in units if u.status == "exist"),
        "deduplicated": sum(1 for u in units if u.status == "dedup"),
        "pending": sum(1 for u in units if u.status == "synth"),
        "items": [
            {"index": u.index, "status": u.status, "fingerprint": u.fingerprint, "text": u.text[:60]} for u in units
        ],
    }
