"""Feishu / Lark channel implementation using the lark-oapi SDK."""

from __future__ import annotations

import asyncio
import json
import re
import threading
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from pathlib import Path
from typing import Any, TypeVar

import lark_oapi as lark
import lark_oapi.ws.client as lark_ws_client
from lark_oapi.api.im.v1 import (
    CreateMessageRequest,
    CreateMessageRequestBody,
    GetMessageResourceRequest,
    P2ImMessageReceiveV1,
    ReplyMessageRequest,
    ReplyMessageRequestBody,
)
from lark_oapi.core.http import HttpMethod
from lark_oapi.core.model.base_request import BaseRequest
from loguru import logger

from g_bridge.channels.base import BaseChannel
from g_bridge.channels.content import (
    FilePayload,
    ImagePayload,
    MediaDownloader,
    MediaRef,
    Payload,
    RichSegment,
    RichTextPayload,
    TextPayload,
    UnsupportedPayload,
    VideoPayload,
    VoicePayload,
)
from g_bridge.channels.events import InboundMessage, Scope
from g_bridge.config.schema import FeishuConfig
from g_bridge.errors import ChannelHandshakeError, ChannelSendError, ChannelTransportError

T = TypeVar("T")

HTTP_TIMEOUT_S = 15.0
WS_JOIN_TIMEOUT_S = 5.0

# Bot not in chat, user unreachable, chat disbanded, no permission for the app
PERMISSION_CODES = frozenset({230002, 230013, 230027, 99991672})

_SPACES = re.compile(r"[ \t]{2,}")


def media_ref(kind: str, message_id: str, key: str, file_name: str = "") -> MediaRef:
    """Resource downloads need the owning message id as well as the key."""
    return MediaRef(code=f"{kind}:{message_id}:{key}", file_name=file_name)


def _open_id(user_id: Any) -> str:
    return str(getattr(user_id, "open_id", "") or "") if user_id is not None else ""


def _load_content(raw: str | None) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except (json.JSONDecodeError, TypeError):
        return {"text": raw or ""}
    return parsed if isinstance(parsed, dict) else {}


def _post_body(data: dict[str, Any]) -> dict[str, Any]:
    # Post content is either flat or keyed by locale (zh_cn, en_us, ...)
    if "content" in data:
        return data
    for value in data.values():
        if isinstance(value, dict) and "content" in value:
            return value
    return {}


def _resolve_mentions(text: str, mentions: list[Any], bot_open_id: str) -> str:
    for mention in mentions:
        key = getattr(mention, "key", "") or ""
        if not key:
            continue
        if bot_open_id and _open_id(getattr(mention, "id", None)) == bot_open_id:
            text = text.replace(key, "")
        else:
            name = getattr(mention, "name", "") or ""
            text = text.replace(key, f"@{name}" if name else "")
    return _SPACES.sub(" ", text).strip()


def parse_content(
    message_type: str,
    raw: str | None,
    message_id: str,
    mentions: list[Any] | None = None,
    bot_open_id: str = "",
) -> Payload:
    """Map a Feishu message body to a platform-neutral payload."""
    data = _load_content(raw)
    if message_type == "text":
        return TextPayload(text=_resolve_mentions(str(data.get("text") or ""), mentions or [], bot_open_id))

    if message_type == "post":
        body = _post_body(data)
        segments: list[RichSegment] = []
        if body.get("title"):
            segments.append(RichSegment(kind="text", text=str(body["title"])))
        for line in body.get("content") or []:
            for node in line or []:
                tag = node.get("tag")
                if tag in ("text", "a") and node.get("text"):
                    segments.append(RichSegment(kind="text", text=str(node["text"])))
                elif tag == "img" and node.get("image_key"):
                    segments.append(
                        RichSegment(kind="picture", media=media_ref("image", message_id, node["image_key"]))
                    )
                elif tag == "at" and node.get("user_id") != bot_open_id:
                    segments.append(RichSegment(kind="mention", text=str(node.get("user_name") or "")))
        return RichTextPayload(segments=tuple(segments))

    if message_type == "image":
        return ImagePayload(media=media_ref("image", message_id, str(data.get("image_key") or "")))
    if message_type == "audio":
        return VoicePayload(media=media_ref("file", message_id, str(data.get("file_key") or "")))
    if message_type == "media":
        return VideoPayload(
            media=media_ref("file", message_id, str(data.get("file_key") or ""), str(data.get("file_name") or ""))
        )
    if message_type == "file":
        file_name = str(data.get("file_name") or "")
        return FilePayload(
            media=media_ref("file", message_id, str(data.get("file_key") or ""), file_name),
            file_name=file_name,
        )
    return UnsupportedPayload(kind=message_type or "unknown")


def _text_content(text: str) -> str:
    return json.dumps({"text": text}, ensure_ascii=False)


class FeishuChannel(BaseChannel):
    """
    Feishu / Lark bot on the SDK's event WebSocket.

    The SDK client blocks, so it runs in a daemon thread with its own event
    loop; received events are handed back to the bridge loop. REST calls
    (replies, proactive sends, resource downloads) run in the default
    executor with a timeout.
    """

    name = "feishu"
    message_limit = 4000
    title_prefix = "[Feishu]"

    def __init__(self, config: FeishuConfig, assistant, **kwargs: Any):
        super().__init__(config, assistant, **kwargs)
        self.config: FeishuConfig = config
        self.bot_open_id = ""
        self._client: lark.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws_loop: asyncio.AbstractEventLoop | None = None
        self._ws_thread: threading.Thread | None = None
        self._ws_exit: Future[str] | None = None
        self._downloader = MediaDownloader(prefix="feishu")

    def _domain(self) -> str:
        return lark.LARK_DOMAIN if self.config.domain.lower() == "lark" else lark.FEISHU_DOMAIN

    def _api(self) -> lark.Client:
        if self._client is None:
            self._client = (
                lark.Client.builder()
                .app_id(self.config.app_id)
                .app_secret(self.config.app_secret)
                .domain(self._domain())
                .log_level(lark.LogLevel.WARNING)
                .build()
            )
        return self._client

    async def _run_sync(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(None, fn, *args), timeout=HTTP_TIMEOUT_S)

    async def _send(self, method: str, fn: Callable[[Any], Any], request: Any) -> Any:
        response = await self._run_sync(fn, request)
        if not response.success():
            code = response.code
            raise ChannelSendError(
                f"Feishu {method} failed: code={code}, msg={response.msg}",
                code=str(code),
                permission=code in PERMISSION_CODES,
            )
        return response

    async def _fetch_bot_open_id(self) -> str:
        request = BaseRequest()
        request.uri = "/open-apis/bot/v3/info"
        request.http_method = HttpMethod.GET
        request.token_types = {lark.AccessTokenType.TENANT}
        response = await self._run_sync(self._api().request, request)
        if response.code != 0:
            raise ChannelSendError(
                f"Feishu bot info failed: code={response.code}, msg={response.msg}",
                code=str(response.code),
            )
        body = json.loads(response.raw.content) if response.raw and response.raw.content else {}
        return str((body.get("bot") or {}).get("open_id") or "")

    # -- transport ---------------------------------------------------------

    async def _handshake(self) -> str:
        if not self.config.app_id or not self.config.app_secret:
            raise ChannelHandshakeError("Feishu app_id / app_secret not configured")
        try:
            self.bot_open_id = await self._fetch_bot_open_id()
        except ChannelSendError as e:
            raise ChannelHandshakeError(f"Feishu rejected the app credentials: {e}") from e
        logger.info(f"Feishu bot {self.bot_open_id or '(unknown open_id)'} authenticated")
        return self.bot_open_id

    def _build_ws_client(self) -> Any:
        handler = (
            lark.EventDispatcherHandler.builder(
                self.config.encrypt_key,
                self.config.verification_token,
                lark.LogLevel.WARNING,
            )
            .register_p2_im_message_receive_v1(self._on_message_sync)
            .build()
        )
        return lark.ws.Client(
            self.config.app_id,
            self.config.app_secret,
            event_handler=handler,
            log_level=lark.LogLevel.WARNING,
            domain=self._domain(),
        )

    async def _open_transport(self, endpoint: Any) -> None:
        self._loop = asyncio.get_running_loop()
        ws_client = self._build_ws_client()
        self._ws_loop = asyncio.new_event_loop()
        self._ws_exit = Future()
        self._ws_thread = threading.Thread(
            target=self._run_ws,
            args=(ws_client, self._ws_loop, self._ws_exit),
            name=f"feishu-ws:{self.assistant_id}",
            daemon=True,
        )
        self._ws_thread.start()

    @staticmethod
    def _run_ws(ws_client: Any, ws_loop: asyncio.AbstractEventLoop, exit_future: Future[str]) -> None:
        # The SDK drives its connection through a module-level loop
        asyncio.set_event_loop(ws_loop)
        lark_ws_client.loop = ws_loop
        reason = "Feishu WebSocket closed"
        try:
            ws_client.start()
        except Exception as e:
            reason = f"Feishu WebSocket error: {e}"
        finally:
            ws_loop.close()
            try:
                exit_future.set_result(reason)
            except InvalidStateError:
                pass

    async def _read_transport(self) -> None:
        if self._ws_exit is None:
            return
        reason = await asyncio.wrap_future(self._ws_exit)
        raise ChannelTransportError(reason)

    async def _close_transport(self) -> None:
        ws_loop, self._ws_loop = self._ws_loop, None
        thread, self._ws_thread = self._ws_thread, None
        self._ws_exit = None
        if ws_loop is not None and not ws_loop.is_closed():
            try:
                ws_loop.call_soon_threadsafe(ws_loop.stop)
            except RuntimeError:
                pass  # closed between the check and the call
        if thread is not None and thread.is_alive():
            await asyncio.to_thread(thread.join, WS_JOIN_TIMEOUT_S)

    async def _check_alive(self) -> bool:
        await self._fetch_bot_open_id()
        return True

    # -- inbound -----------------------------------------------------------

    def _on_message_sync(self, data: P2ImMessageReceiveV1) -> None:
        """Runs on the WebSocket thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        message = self.parse_event(data.event)
        if message is not None:
            loop.call_soon_threadsafe(self.dispatch, message)

    def _mentions_bot(self, mentions: list[Any]) -> bool:
        if not self.bot_open_id:
            return bool(mentions)
        return any(_open_id(getattr(m, "id", None)) == self.bot_open_id for m in mentions)

    def parse_event(self, event: Any) -> InboundMessage | None:
        """Normalize a receive event; None for app senders and unaddressed group chatter."""
        message = getattr(event, "message", None)
        sender = getattr(event, "sender", None)
        if message is None or sender is None:
            return None
        if getattr(sender, "sender_type", "") in ("app", "bot"):
            return None

        mentions = list(getattr(message, "mentions", None) or [])
        is_group = message.chat_type != "p2p"
        if is_group and self.config.require_mention and not self._mentions_bot(mentions):
            logger.debug(f"Ignoring unaddressed group message in {message.chat_id}")
            return None

        message_id = str(message.message_id or "")
        return InboundMessage(
            id=message_id,
            conversation_id=str(message.chat_id or ""),
            scope=Scope.GROUP if is_group else Scope.DIRECT,
            sender_id=_open_id(getattr(sender, "sender_id", None)),
            payload=parse_content(message.message_type, message.content, message_id, mentions, self.bot_open_id),
            reply_handle=message_id,
            raw={"chat_id": message.chat_id, "message_type": message.message_type},
        )

    async def fetch_media(self, ref: MediaRef) -> Path | None:
        kind, message_id, key = ref.code.split(":", 2)
        request = (
            GetMessageResourceRequest.builder()
            .message_id(message_id)
            .file_key(key)
            .type(kind)
            .build()
        )
        response = await self._run_sync(self._api().im.v1.message_resource.get, request)
        if not response.success():
            logger.warning(f"Feishu resource download failed: code={response.code}, msg={response.msg}")
            return None
        file_name = ref.file_name or getattr(response, "file_name", "") or ""
        return self._downloader.save_bytes(
            response.file.read(), file_name, "image/jpeg" if kind == "image" else ""
        )

    # -- outbound ----------------------------------------------------------

    async def _create_message(self, receive_id: str, receive_id_type: str, text: str) -> None:
        request = (
            CreateMessageRequest.builder()
            .receive_id_type(receive_id_type)
            .request_body(
                CreateMessageRequestBody.builder()
                .receive_id(receive_id)
                .msg_type("text")
                .content(_text_content(text))
                .build()
            )
            .build()
        )
        await self._send("message.create", self._api().im.v1.message.create, request)

    async def send_reply(self, message: InboundMessage, text: str) -> None:
        request = (
            ReplyMessageRequest.builder()
            .message_id(message.reply_handle)
            .request_body(ReplyMessageRequestBody.builder().msg_type("text").content(_text_content(text)).build())
            .build()
        )
        try:
            await self._send("message.reply", self._api().im.v1.message.reply, request)
        except ChannelSendError as e:
            if e.permission:
                raise
            logger.warning(f"Feishu reply failed ({e}); posting to chat {message.conversation_id} instead")
            await self._create_message(message.conversation_id, "chat_id", text)

    def infer_is_group(self, target_id: str) -> bool:
        return target_id.startswith("oc_")

    async def send_proactive(self, target_id: str, is_group: bool, text: str, title: str = "") -> None:
        receive_id_type = "chat_id" if is_group or target_id.startswith("oc_") else "open_id"
        await self._create_message(target_id, receive_id_type, text)
        logger.info(f"Feishu proactive message sent to {target_id}")
