import pytest

from parasynth import backends
from parasynth.backends import (
    AzureSpeechBackend,
    EdgeBackend,
    SynthesisRequest,
    build_ssml,
    edge_rate,
    make_backend_factory,
    openai_speed,
    rate_multiplier,
)


@pytest.mark.parametrize(
    "rate,expected",
    [
        ("1", 1.0),
        ("1.25", 1.25),
        ("medium", 1.0),
        ("x-slow", 0.5),
        ("+0.5", 1.5),
        ("-0.2", 0.8),
        ("+20%", 1.2),
        ("-50%", 0.5),
    ],
)
def test_rate_multiplier_forms(rate, expected):
    assert rate_multiplier(rate) == pytest.approx(expected)


@pytest.mark.parametrize("rate", ["", "0", "-1", "-100%", "fastest", "1.2.3"])
def test_rate_multiplier_rejects(rate):
    with pytest.raises(ValueError):
        rate_multiplier(rate)


def test_edge_rate_and_openai_speed():
    assert edge_rate("1") == "+0%"
    assert edge_rate("+0.5") == "+50%"
    assert edge_rate("slow") == "-36%"
    assert openai_speed("x-fast") == 2.0
    assert openai_speed("0.1") == 0.25
    assert openai_speed("9") == 4.0


def test_ssml_escapes_text_and_carries_voice_rate():
    ssml = build_ssml("en-US-AriaNeural", "+0.5", "Tom & Jerry <live>")
    assert '<voice name="en-US-AriaNeural">' in ssml
    assert '<prosody rate="+0.5" pitch="+0Hz">' in ssml
    assert "Tom &amp; Jerry &lt;live&gt;" in ssml
    assert ssml.startswith("<speak ") and ssml.endswith("</speak>")
    assert SynthesisRequest("v", "1", "hi").markup == build_ssml("v", "1", "hi")


def test_unknown_backend():
    with pytest.raises(ValueError):
        make_backend_factory("festival")


def test_factory_builds_fresh_instances():
    factory = make_backend_factory("edge", request_timeout_seconds=15)
    a, b = factory(), factory()
    assert isinstance(a, EdgeBackend) and a is not b
    assert a.request_timeout_seconds == 15.0


def test_azure_requires_credentials(monkeypatch):
    monkeypatch.delenv("AZURE_SPEECH_KEY", raising=False)
    monkeypatch.delenv("AZURE_SPEECH_REGION", raising=False)
    with pytest.raises(ValueError):
        AzureSpeechBackend()


def test_azure_posts_ssml(monkeypatch):
    captured = {}

    class _Resp:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def read(self):
            return b"webm-bytes"

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["headers"] = dict(req.header_items())
        captured["body"] = req.data.decode("utf-8")
        captured["timeout"] = timeout
        return _Resp()

    monkeypatch.setattr(backends, "urlopen", fake_urlopen)
    be = AzureSpeechBackend(key="k", region="westus", request_timeout_seconds=5)
    assert be.synthesize(SynthesisRequest("en-US-JennyNeural", "fast", "Hi")) == b"webm-bytes"
    assert captured["url"] == "https://westus.tts.speech.microsoft.com/cognitiveservices/v1"
    assert captured["headers"]["X-microsoft-outputformat"] == "webm-24khz-16bit-mono-opus"
    assert captured["headers"]["Ocp-apim-subscription-key"] == "k"
    assert 'rate="fast"' in captured["body"]
    assert captured["timeout"] == 5.0


def test_edge_backend_collects_audio_chunks(monkeypatch):
    seen = {}

    class _Communicate:
        def __init__(self, text, voice, *, rate, receive_timeout):
            seen.update(text=text, voice=voice, rate=rate, receive_timeout=receive_timeout)

        async def stream(self):
            yield {"type": "audio", "data": b"ab"}
            yield {"type": "WordBoundary", "offset": 0}
            yield {"type": "audio", "data": b"cd"}

    monkeypatch.setattr(backends.edge_tts, "Communicate", _Communicate)
    out = EdgeBackend(request_timeout_seconds=30).synthesize(SynthesisRequest("en-US-AriaNeural", "-0.2", "Hello"))
    assert out == b"abcd"
    assert seen == {"text": "Hello", "voice": "en-US-AriaNeural", "rate": "-20%", "receive_timeout": 30}


def test_edge_backend_empty_audio_is_an_error(monkeypatch):
    class _Silent:
        def __init__(self, *a, **kw):
            pass

        async def stream(self):
            if False:
                yield {}

    monkeypatch.setattr(backends.edge_tts, "Communicate", _Silent)
    with pytest.raises(RuntimeError):
        EdgeBackend().synthesize(SynthesisRequest("v", "1", "Hello"))


def test_openai_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ValueError, match="OPENAI_API_KEY"):
        make_backend_factory("openai")()


def test_openai_maps_rate_to_speed(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    seen = {}

    class _Speech:
        def create(self, **kw):
            seen.update(kw)
            return type("Resp", (), {"content": b"mp3-bytes"})()

    class _Client:
        def __init__(self, api_key):
            seen["api_key"] = api_key
            self.audio = type("Audio", (), {"speech": _Speech()})()

    monkeypatch.setattr(backends, "OpenAI", _Client)
    be = make_backend_factory("openai", voice="nova", openai_format="opus")()
    assert be.synthesize(SynthesisRequest("nova", "x-fast", "Hi")) == b"mp3-bytes"
    assert seen["speed"] == 2.0
    assert seen["response_format"] == "opus"
    assert seen["api_key"] == "sk-test"
    assert be.copy_suffixes == frozenset({".opus", ".ogg"})
