import asyncio
from pathlib import Path

import httpx

from g_bridge.channels.content import (
    EMPTY_TEXT,
    ContentExtractor,
    ExtractedContent,
    FilePayload,
    ImagePayload,
    MediaDownloader,
    MediaRef,
    RichSegment,
    RichTextPayload,
    TextPayload,
    UnsupportedPayload,
    VoicePayload,
)


class _Fetcher:
    def __init__(self, fail_codes: tuple[str, ...] = ()):
        self.fail_codes = fail_codes
        self.calls: list[str] = []

    async def __call__(self, ref: MediaRef) -> Path | None:
        self.calls.append(ref.code)
        if ref.code in self.fail_codes:
            raise httpx.ConnectError("download refused")
        return Path(f"/tmp/{ref.code}.bin")


class _Transcriber:
    def __init__(self, text: str):
        self.text = text
        self.calls: list[str] = []

    async def transcribe(self, file_path) -> str:
        self.calls.append(str(file_path))
        return self.text


def _extract(payload, fetcher=None, transcriber=None) -> ExtractedContent:
    extractor = ContentExtractor(fetcher or _Fetcher(), transcriber)
    return asyncio.run(extractor.extract(payload))


def test_text_strips_leading_mention():
    assert _extract(TextPayload(text="@Ada  what's up?")).text == "what's up?"
    assert _extract(TextPayload(text="   ")).text == EMPTY_TEXT


def test_voice_prefers_platform_recognition():
    transcriber = _Transcriber("from whisper")
    result = _extract(
        VoicePayload(media=MediaRef(code="v1"), recognition="hello there"),
        transcriber=transcriber,
    )

    assert result.text == "hello there"
    assert result.attachments == ["/tmp/v1.bin"]
    assert transcriber.calls == []


def test_voice_without_recognition_uses_transcriber():
    transcriber = _Transcriber("transcribed words")
    result = _extract(VoicePayload(media=MediaRef(code="v2")), transcriber=transcriber)

    assert result.text == "transcribed words"
    assert transcriber.calls == ["/tmp/v2.bin"]


def test_voice_without_any_text_gets_placeholder():
    assert _extract(VoicePayload(media=MediaRef(code="v3"))).text == "[voice message]"


def test_image_download_failure_degrades_to_placeholder():
    result = _extract(ImagePayload(media=MediaRef(code="img")), fetcher=_Fetcher(fail_codes=("img",)))

    assert result.text == "[image message]"
    assert result.attachments == []


def test_file_payload_names_the_file():
    result = _extract(FilePayload(media=MediaRef(code="f1", file_name="report.pdf"), file_name="report.pdf"))

    assert result.text == "[file: report.pdf]"
    assert result.as_prompt() == "[file: report.pdf]\n\n[Attachment: /tmp/f1.bin]"


def test_rich_text_skips_mentions_and_keeps_failed_pictures_as_markers():
    fetcher = _Fetcher(fail_codes=("p2",))
    payload = RichTextPayload(
        segments=(
            RichSegment(kind="text", text="@Ada look at these"),
            RichSegment(kind="mention", text="@Ada"),
            RichSegment(kind="picture", media=MediaRef(code="p1")),
            RichSegment(kind="picture", media=MediaRef(code="p2")),
        )
    )

    result = _extract(payload, fetcher=fetcher)

    assert result.text == "look at these [image]"
    assert result.attachments == ["/tmp/p1.bin"]
    assert fetcher.calls == ["p1", "p2"]


def test_rich_text_with_only_pictures():
    result = _extract(RichTextPayload(segments=(RichSegment(kind="picture", media=MediaRef(code="p1")),)))
    assert result.text == "[image message]"


def test_unsupported_kind_gets_placeholder():
    assert _extract(UnsupportedPayload(kind="sticker")).text == "[sticker message]"
    assert _extract(UnsupportedPayload(kind="location", text="near the office")).text == "near the office"


def _patch_transport(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("g_bridge.channels.content.httpx.AsyncClient", factory)


def test_media_downloader_writes_file(monkeypatch, tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"png-bytes", headers={"content-type": "image/png"})

    _patch_transport(monkeypatch, handler)
    downloader = MediaDownloader(prefix="test", directory=tmp_path)

    path = asyncio.run(downloader.download("https://media.example/x"))

    assert path is not None
    assert path.parent == tmp_path
    assert path.suffix == ".png"
    assert path.read_bytes() == b"png-bytes"


def test_media_downloader_rejects_oversized_media(monkeypatch, tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"x" * 100)

    _patch_transport(monkeypatch, handler)
    downloader = MediaDownloader(prefix="test", max_bytes=10, directory=tmp_path)

    assert asyncio.run(downloader.download("https://media.example/big", "big.bin")) is None
    assert list(tmp_path.iterdir()) == []
