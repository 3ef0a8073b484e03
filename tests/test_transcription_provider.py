import asyncio
from pathlib import Path

import httpx

from g_bridge.providers.transcription import GROQ_TRANSCRIPTION_URL, GroqTranscriptionProvider


class _DummyResponse:
    def __init__(self, payload: dict):
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


class _DummyClient:
    def __init__(self, captured: dict, payload: dict | None = None, error: Exception | None = None):
        self.captured = captured
        self.payload = payload or {}
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url: str, headers: dict, files: dict):
        if self.error is not None:
            raise self.error
        self.captured["url"] = url
        self.captured["headers"] = headers
        self.captured["files"] = files
        return _DummyResponse(self.payload)


def test_groq_transcribe_payload(monkeypatch, tmp_path: Path):
    audio_path = tmp_path / "voice.amr"
    audio_path.write_bytes(b"audio-data")
    captured: dict[str, object] = {}

    def factory(timeout: float):
        captured["timeout"] = timeout
        return _DummyClient(captured, {"text": " hello from voice "})

    monkeypatch.setattr("g_bridge.providers.transcription.httpx.AsyncClient", factory)

    provider = GroqTranscriptionProvider(api_key="gsk_test")
    result = asyncio.run(provider.transcribe(audio_path))

    assert result == "hello from voice"
    assert captured["url"] == GROQ_TRANSCRIPTION_URL
    assert captured["timeout"] == 60.0
    assert captured["headers"] == {"Authorization": "Bearer gsk_test"}
    files = captured["files"]
    assert files["file"] == ("voice.amr", b"audio-data")
    assert files["model"] == (None, "whisper-large-v3-turbo")
    assert files["response_format"] == (None, "json")


def test_groq_transcribe_returns_empty_on_http_error(monkeypatch, tmp_path: Path):
    audio_path = tmp_path / "voice.ogg"
    audio_path.write_bytes(b"audio-data")
    monkeypatch.setattr(
        "g_bridge.providers.transcription.httpx.AsyncClient",
        lambda timeout: _DummyClient({}, error=httpx.ConnectError("offline")),
    )

    provider = GroqTranscriptionProvider(api_key="gsk_test")

    assert asyncio.run(provider.transcribe(audio_path)) == ""


def test_groq_transcribe_disabled_without_key(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    provider = GroqTranscriptionProvider()

    assert provider.enabled is False
    assert asyncio.run(provider.transcribe(tmp_path / "missing.ogg")) == ""


def test_groq_api_key_read_from_environment(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk_env")

    assert GroqTranscriptionProvider().api_key == "gsk_env"
