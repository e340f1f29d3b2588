from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional
from urllib.request import Request, urlopen
from xml.sax.saxutils import escape, quoteattr

import edge_tts
from dotenv import load_dotenv
from openai import OpenAI

load_dotenv()

RATE_NAMES: Dict[str, float] = {
    "x-slow": 0.5,
    "slow": 0.64,
    "medium": 1.0,
    "default": 1.0,
    "fast": 1.55,
    "x-fast": 2.0,
}

OPENAI_VOICES = {"alloy", "ash", "coral", "echo", "fable", "nova", "onyx", "sage", "shimmer"}
OPENAI_COPY_SUFFIXES: Dict[str, FrozenSet[str]] = {
    "mp3": frozenset({".mp3"}),
    "opus": frozenset({".opus", ".ogg"}),
    "aac": frozenset({".aac", ".m4a"}),
    "flac": frozenset({".flac"}),
    "wav": frozenset({".wav"}),
}

AZURE_OUTPUT_FORMAT = "webm-24khz-16bit-mono-opus"

_PERCENT_RE = re.compile(r"^[+-]\d+(?:\.\d+)?%$")
_DELTA_RE = re.compile(r"^[+-]\d+(?:\.\d+)?$")
_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$")


def rate_multiplier(rate: str) -> float:
    """Speaking-rate multiplier for an SSML-style rate string (1.0 = medium).

    Accepted forms: a named rate (``x-slow`` .. ``x-fast``), a positive number
    (``1.2``), a signed delta (``+0.5``) or a signed percent (``-20%``).
    """
    r = (rate or "").strip().lower()
    if r in RATE_NAMES:
        return RATE_NAMES[r]
    if _PERCENT_RE.match(r):
        value = 1.0 + float(r[:-1]) / 100.0
    elif _DELTA_RE.match(r):
        value = 1.0 + float(r)
    elif _NUMBER_RE.match(r):
        value = float(r)
    else:
        raise ValueError(
            f"Invalid rate '{rate}'. Use x-slow|slow|medium|fast|x-fast, a number > 0, a delta (+0.5) or a percent (+20%)"
        )
    if value <= 0:
        raise ValueError(f"Invalid rate '{rate}': resulting speed must be > 0")
    return value


def edge_rate(rate: str) -> str:
    return f"{round((rate_multiplier(rate) - 1.0) * 100):+d}%"


def openai_speed(rate: str) -> float:
    return max(0.25, min(4.0, round(rate_multiplier(rate), 3)))


def build_ssml(voice: str, rate: str, text: str) -> str:
    return (
        '<speak xmlns="http://www.w3.org/2001/10/synthesis" xmlns:mstts="http://www.w3.org/2001/mstts" '
        'xmlns:emo="http://www.w3.org/2009/10/emotionml" version="1.0" xml:lang="en-US">'
        f"<voice name={quoteattr(voice)}><prosody rate={quoteattr(rate)} pitch=\"+0Hz\">"
        f"{escape(text)}</prosody></voice></speak>"
    )


@dataclass(frozen=True)
class SynthesisRequest:
    voice: str
    rate: str
    text: str

    @property
    def markup(self) -> str:
        return build_ssml(self.voice, self.rate, self.text)


class SynthesisBackend:
    """One connection to a speech service. Any exception from ``synthesize`` is treated as transient."""

    name = "base"
    extension = "mp3"
    copy_suffixes: FrozenSet[str] = frozenset({".mp3"})
    default_voice = ""

    def synthesize(self, request: SynthesisRequest) -> bytes:
        raise NotImplementedError


class EdgeBackend(SynthesisBackend):
    """Microsoft Edge read-aloud voices through the edge-tts client."""

    name = "edge"
    extension = "mp3"
    copy_suffixes = frozenset({".mp3"})
    default_voice = "en-US-AriaNeural"

    def __init__(self, *, request_timeout_seconds: float = 60.0) -> None:
        self.request_timeout_seconds = float(request_timeout_seconds)

    def synthesize(self, request: SynthesisRequest) -> bytes:
        data = asyncio.run(self._collect(request))
        if not data:
            raise RuntimeError(f"edge-tts returned empty audio for: {request.text[:30]}")
        return data

    async def _collect(self, request: SynthesisRequest) -> bytes:
        communicate = edge_tts.Communicate(
            request.text,
            request.voice,
            rate=edge_rate(request.rate),
            receive_timeout=int(self.request_timeout_seconds),
        )
        buf = bytearray()
        async for chunk in communicate.stream():
            if chunk["type"] == "audio":
                buf.extend(chunk["data"])
        return bytes(buf)


class AzureSpeechBackend(SynthesisBackend):
    """Azure Speech REST endpoint; posts the SSML markup as-is."""

    name = "azure"
    extension = "webm"
    copy_suffixes = frozenset({".webm", ".ogg", ".opus"})
    default_voice = "en-US-AriaNeural"

    def __init__(
        self,
        *,
        key: Optional[str] = None,
        region: Optional[str] = None,
        request_timeout_seconds: float = 60.0,
    ) -> None:
        self.key = key or os.getenv("AZURE_SPEECH_KEY")
        self.region = region or os.getenv("AZURE_SPEECH_REGION")
        if not self.key or not self.region:
            raise ValueError("Azure backend requires AZURE_SPEECH_KEY and AZURE_SPEECH_REGION")
        self.endpoint = f"https://{self.region}.tts.speech.microsoft.com/cognitiveservices/v1"
        self.request_timeout_seconds = float(request_timeout_seconds)

    def synthesize(self, request: SynthesisRequest) -> bytes:
        req = Request(
            self.endpoint,
            data=request.markup.encode("utf-8"),
            method="POST",
            headers={
                "Ocp-Apim-Subscription-Key": self.key,
                "Content-Type": "application/ssml+xml",
                "X-Microsoft-OutputFormat": AZURE_OUTPUT_FORMAT,
                "User-Agent": "parasynth",
            },
        )
        with urlopen(req, timeout=self.request_timeout_seconds) as resp:
            data = resp.read()
        if not data:
            raise RuntimeError("Azure speech returned empty audio")
        return data


class OpenAISpeechBackend(SynthesisBackend):
    name = "openai"
    default_voice = "nova"

    def __init__(
        self,
        *,
        model: str = "tts-1",
        audio_format: str = "mp3",
        request_timeout_seconds: float = 90.0,
        voice: Optional[str] = None,
    ) -> None:
        if audio_format not in OPENAI_COPY_SUFFIXES:
            raise ValueError(f"Invalid OpenAI audio format '{audio_format}'. Valid: {', '.join(sorted(OPENAI_COPY_SUFFIXES))}")
        if voice is not None and voice not in OPENAI_VOICES:
            raise ValueError(f"Invalid voice '{voice}'. Valid: {', '.join(sorted(OPENAI_VOICES))}")
        self.model = model
        self.extension = audio_format
        self.copy_suffixes = OPENAI_COPY_SUFFIXES[audio_format]
        self.request_timeout_seconds = float(request_timeout_seconds)
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OpenAI backend requires OPENAI_API_KEY")
        self.client = OpenAI(api_key=api_key)

    def synthesize(self, request: SynthesisRequest) -> bytes:
        resp = self.client.audio.speech.create(
            model=self.model,
            voice=request.voice,
            input=request.text,
            response_format=self.extension,
            speed=openai_speed(request.rate),
            timeout=self.request_timeout_seconds,
        )
        return resp.content


BACKENDS: Dict[str, type] = {
    EdgeBackend.name: EdgeBackend,
    AzureSpeechBackend.name: AzureSpeechBackend,
    OpenAISpeechBackend.name: OpenAISpeechBackend,
}


def make_backend_factory(
    name: str,
    *,
    voice: Optional[str] = None,
    request_timeout_seconds: Optional[float] = None,
    openai_model: Optional[str] = None,
    openai_format: Optional[str] = None,
) -> Callable[[], SynthesisBackend]:
    key = (name or "").strip().lower()
    if key not in BACKENDS:
        raise ValueError(f"Unknown backend '{name}'. Valid: {', '.join(sorted(BACKENDS))}")
    opts: Dict[str, Any] = {}
    if request_timeout_seconds is not None:
        opts["request_timeout_seconds"] = float(request_timeout_seconds)
    if key == OpenAISpeechBackend.name:
        opts["voice"] = voice
        if openai_model:
            opts["model"] = openai_model
        if openai_format:
            opts["audio_format"] = openai_format
    cls = BACKENDS[key]

    def factory() -> SynthesisBackend:
        return cls(**opts)

    return factory
