"""DingTalk channel implementation using the Stream-mode gateway."""

from __future__ import annotations

import json
import re
import socket
import time
import urllib.parse
import uuid
from pathlib import Path
from typing import Any

import httpx
import websockets
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
from g_bridge.channels.streaming import DraftTarget
from g_bridge.config.schema import DingtalkConfig
from g_bridge.errors import ChannelHandshakeError, ChannelSendError, ChannelTransportError

DINGTALK_API = "https://api.dingtalk.com"
DINGTALK_OAPI = "https://oapi.dingtalk.com"
CALLBACK_TOPIC = "/v1.0/im/bot/messages/get"
STREAM_UA = "g-bridge-dingtalk-stream/0.1"
HTTP_TIMEOUT_S = 15.0
TOKEN_REFRESH_MARGIN_S = 60
TITLE_MAX_CHARS = 20

PERMISSION_CODE_PREFIXES = (
    "Forbidden.AccessDenied",
    "invalidParameter.userIds.invalid",
    "invalidParameter.userIds.empty",
    "invalidParameter.openConversationId.invalid",
    "invalidParameter.robotCode.empty",
)

_MARKDOWN_HINT = re.compile(r"^[#*>-]|[*_`#\[\]]")
_TITLE_PREFIX = re.compile(r"^[#*\s>-]+")

_MEDIA_TYPES: dict[str, tuple[str, ...]] = {
    "image": ("jpg", "jpeg", "png", "gif", "bmp"),
    "voice": ("mp3", "amr", "wav"),
    "video": ("mp4", "avi", "mov"),
}


def is_markdown(text: str) -> bool:
    return "\n" in text or bool(_MARKDOWN_HINT.search(text))


def markdown_title(text: str, fallback: str) -> str:
    """First line without markdown markers, capped for DingTalk's title field."""
    first_line = text.strip().split("\n", 1)[0]
    title = _TITLE_PREFIX.sub("", first_line).strip()[:TITLE_MAX_CHARS]
    return title or fallback


def media_type_for(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    for media_type, extensions in _MEDIA_TYPES.items():
        if ext in extensions:
            return media_type
    return "file"


def error_code(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    return str(body.get("code") or body.get("subCode") or "")


def is_permission_code(code: str) -> bool:
    return any(code.startswith(prefix) for prefix in PERMISSION_CODE_PREFIXES)


def build_ack(message_id: str, topic: str) -> dict[str, Any]:
    return {
        "code": 200,
        "headers": {"messageId": message_id, "topic": topic, "contentType": "application/json"},
        "message": "OK",
        "data": "",
    }


def build_ws_url(endpoint: str, ticket: str) -> str:
    joiner = "&" if "?" in endpoint else "?"
    return f"{endpoint}{joiner}ticket={urllib.parse.quote(ticket, safe='')}"


def _local_ip() -> str:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


def _media_ref(content: dict[str, Any]) -> MediaRef | None:
    code = str(content.get("downloadCode") or content.get("pictureDownloadCode") or "")
    if not code:
        return None
    return MediaRef(code=code, file_name=str(content.get("fileName") or ""))


def parse_payload(data: dict[str, Any]) -> Payload:
    """Map a robot callback body to a content payload."""
    msg_type = str(data.get("msgtype") or "")
    content = data.get("content") if isinstance(data.get("content"), dict) else {}

    if msg_type == "text":
        return TextPayload(text=str((data.get("text") or {}).get("content") or ""))
    if msg_type in ("voice", "audio"):
        return VoicePayload(media=_media_ref(content), recognition=str(content.get("recognition") or ""))
    if msg_type in ("picture", "image"):
        return ImagePayload(media=_media_ref(content))
    if msg_type == "video":
        return VideoPayload(media=_media_ref(content))
    if msg_type == "file":
        return FilePayload(media=_media_ref(content), file_name=str(content.get("fileName") or ""))
    if msg_type == "richText" and isinstance(content.get("richText"), list):
        segments: list[RichSegment] = []
        for part in content["richText"]:
            if not isinstance(part, dict):
                continue
            kind = str(part.get("type") or ("text" if part.get("text") else ""))
            if kind == "text":
                segments.append(RichSegment(kind="text", text=str(part.get("text") or "")))
            elif kind == "picture":
                segments.append(RichSegment(kind="picture", media=_media_ref(part)))
            elif kind == "at":
                segments.append(RichSegment(kind="mention", text=str(part.get("atName") or "")))
        return RichTextPayload(segments=tuple(segments))

    fallback = str((data.get("text") or {}).get("content") or "")
    return UnsupportedPayload(kind=msg_type or "unknown", text=fallback)


def parse_robot_message(data: dict[str, Any]) -> InboundMessage:
    """Normalize a DingTalk robot callback into an ``InboundMessage``."""
    is_group = str(data.get("conversationType") or "") == "2"
    sender_id = str(data.get("senderStaffId") or data.get("senderId") or "")
    expires_ms = data.get("sessionWebhookExpiredTime")
    return InboundMessage(
        id=str(data.get("msgId") or ""),
        conversation_id=str(data.get("conversationId") or sender_id),
        scope=Scope.GROUP if is_group else Scope.DIRECT,
        sender_id=sender_id,
        sender_name=str(data.get("senderNick") or ""),
        payload=parse_payload(data),
        reply_handle=str(data.get("sessionWebhook") or ""),
        expires_at=(float(expires_ms) / 1000.0) if expires_ms else None,
        raw=data,
    )


class _CardDraft:
    """AI card created once per reply and streamed with full-content updates."""

    def __init__(self, channel: "DingtalkChannel", message: InboundMessage):
        self._channel = channel
        self._message = message

    async def create_draft(self, text: str) -> str:
        return await self._channel.create_card(self._message, text)

    async def edit_draft(self, handle: Any, text: str, final: bool = False) -> None:
        await self._channel.stream_card(str(handle), text, finalize=final)

    async def discard_draft(self, handle: Any) -> None:
        await self._channel.stream_card(str(handle), "…", finalize=True)

    async def send_text(self, text: str) -> None:
        await self._channel.send_reply(self._message, text)


class DingtalkChannel(BaseChannel):
    """
    DingTalk robot connected through Stream mode.

    A REST call opens the gateway connection and returns a WebSocket
    endpoint plus ticket. Callback frames are acknowledged before the
    message is processed; replies go to the per-message session webhook.
    """

    name = "dingtalk"
    message_limit = 4000
    title_prefix = "[DingTalk]"

    def __init__(self, config: DingtalkConfig, assistant, **kwargs: Any):
        super().__init__(config, assistant, **kwargs)
        self.config: DingtalkConfig = config
        self.robot_code = config.robot_code or config.app_key
        self._ws: Any = None
        self._token: str = ""
        self._token_expires_at = 0.0
        self._downloader = MediaDownloader(prefix="dingtalk")

    # -- HTTP helpers ------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        files: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_S) as client:
            response = await client.request(
                method, url, json=json_body, headers=headers, params=params, files=files
            )
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text[:200]}
        return response.status_code, body

    async def get_access_token(self) -> str:
        """App access token, cached until shortly before it expires."""
        if self._token and time.time() < self._token_expires_at:
            return self._token
        status, body = await self._request(
            "POST",
            f"{DINGTALK_API}/v1.0/oauth2/accessToken",
            json_body={"appKey": self.config.app_key, "appSecret": self.config.app_secret},
        )
        token = body.get("accessToken") if isinstance(body, dict) else None
        if status >= 400 or not token:
            raise ChannelSendError(
                f"DingTalk access token request failed [{error_code(body) or status}]",
                code=error_code(body) or None,
            )
        expire_in = int(body.get("expireIn") or 7200)
        self._token = str(token)
        self._token_expires_at = time.time() + expire_in - TOKEN_REFRESH_MARGIN_S
        return self._token

    async def _get_oapi_token(self) -> str:
        status, body = await self._request(
            "GET",
            f"{DINGTALK_OAPI}/gettoken",
            params={"appkey": self.config.app_key, "appsecret": self.config.app_secret},
        )
        token = body.get("access_token") if isinstance(body, dict) else None
        if status >= 400 or not token:
            raise ChannelSendError(f"DingTalk oapi token request failed: {body}")
        return str(token)

    # -- transport ---------------------------------------------------------

    async def _handshake(self) -> str:
        if not self.config.app_key or not self.config.app_secret:
            raise ChannelHandshakeError("DingTalk app_key and app_secret are required")
        status, body = await self._request(
            "POST",
            f"{DINGTALK_API}/v1.0/gateway/connections/open",
            json_body={
                "clientId": self.config.app_key,
                "clientSecret": self.config.app_secret,
                "subscriptions": [{"type": "CALLBACK", "topic": CALLBACK_TOPIC}],
                "ua": STREAM_UA,
                "localIp": _local_ip(),
            },
        )
        endpoint = body.get("endpoint") if isinstance(body, dict) else None
        if status >= 400 or error_code(body) or not endpoint:
            message = ""
            if isinstance(body, dict):
                message = str(body.get("message") or body.get("errmsg") or "")
            raise ChannelHandshakeError(
                f"DingTalk gateway rejected connection [{error_code(body) or status}]: {message} "
                "(check that the robot uses Stream mode)"
            )
        logger.debug(f"DingTalk gateway endpoint: {endpoint}")
        return build_ws_url(str(endpoint), str(body.get("ticket") or ""))

    async def _open_transport(self, endpoint: str) -> None:
        self._ws = await websockets.connect(endpoint)

    async def _read_transport(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                await self._handle_frame(raw)
        except websockets.ConnectionClosed as e:
            raise ChannelTransportError(f"DingTalk stream closed: {e}") from e
        if not self._stopped:
            raise ChannelTransportError("DingTalk stream closed by server")

    async def _close_transport(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def _check_alive(self) -> bool:
        if self._ws is None:
            return False
        pong_waiter = await self._ws.ping()
        await pong_waiter
        return True

    async def _ack(self, message_id: str, topic: str) -> None:
        if self._ws is None:
            return
        await self._ws.send(json.dumps(build_ack(message_id, topic)))

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Invalid JSON frame from DingTalk: {str(raw)[:100]}")
            return
        if not isinstance(frame, dict):
            return

        headers = frame.get("headers") or {}
        message_id = str(headers.get("messageId") or "")
        topic = str(headers.get("topic") or "")
        frame_type = frame.get("type")

        if frame_type == "PING":
            await self._ack(message_id, topic)
            return
        if frame_type != "CALLBACK" or topic != CALLBACK_TOPIC:
            logger.debug(f"Ignoring DingTalk frame type={frame_type} topic={topic}")
            return

        await self._ack(message_id, topic)
        try:
            data = json.loads(frame.get("data") or "{}")
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Unparseable DingTalk callback data for frame {message_id}")
            return
        if not isinstance(data, dict):
            return
        self.dispatch(parse_robot_message(data))

    # -- replies -----------------------------------------------------------

    async def send_reply(self, message: InboundMessage, text: str) -> None:
        webhook = str(message.reply_handle or "")
        if not webhook:
            raise ChannelSendError("DingTalk message has no session webhook")
        status, body = await self._request(
            "POST",
            webhook,
            json_body={
                "msgtype": "markdown",
                "markdown": {"title": self.assistant.name, "text": text},
            },
        )
        code = body.get("errcode") if isinstance(body, dict) else None
        if status >= 400 or code not in (None, 0):
            raise ChannelSendError(f"DingTalk webhook reply failed ({status}): {body}")

    def draft_target(self, message: InboundMessage) -> DraftTarget | None:
        if self.config.message_type != "card" or not self.config.card_template_id:
            return None
        return _CardDraft(self, message)

    async def create_card(self, message: InboundMessage, text: str) -> str:
        """Create and deliver an AI card; returns the out-track id used for streaming."""
        token = await self.get_access_token()
        out_track_id = uuid.uuid4().hex
        body: dict[str, Any] = {
            "cardTemplateId": self.config.card_template_id,
            "outTrackId": out_track_id,
            "cardData": {"cardParamMap": {self.config.card_template_key: text}},
            "userIdType": 0,
            "robotCode": self.robot_code,
            "pullStrategy": False,
        }
        if message.is_group:
            body["openSpaceId"] = f"dtv1.card//IM_GROUP.{message.conversation_id}"
            body["imGroupOpenSpaceModel"] = {"supportForward": True}
        else:
            robot_user = str(message.raw.get("chatbotUserId") or self.robot_code)
            body["openSpaceId"] = f"dtv1.card//IM_ROBOT.{robot_user}"
            body["imRobotOpenSpaceModel"] = {"spaceType": "IM_ROBOT"}

        status, resp = await self._request(
            "POST",
            f"{DINGTALK_API}/v1.0/card/instances/createAndDeliver",
            json_body=body,
            headers={"x-acs-dingtalk-access-token": token},
        )
        result = resp.get("result") if isinstance(resp, dict) else None
        if status >= 400 or not isinstance(result, dict):
            raise ChannelSendError(f"DingTalk card create failed ({status}): {resp}", code=error_code(resp) or None)
        logger.debug(f"DingTalk card created: {result.get('cardInstanceId', out_track_id)}")
        return out_track_id

    async def stream_card(self, out_track_id: str, text: str, finalize: bool = False) -> None:
        token = await self.get_access_token()
        status, resp = await self._request(
            "PUT",
            f"{DINGTALK_API}/v1.0/card/streaming",
            json_body={
                "outTrackId": out_track_id,
                "guid": uuid.uuid4().hex,
                "key": self.config.card_template_key,
                "content": text,
                "isFull": True,
                "isFinalize": finalize,
                "isError": False,
            },
            headers={"x-acs-dingtalk-access-token": token},
        )
        if status >= 400:
            raise ChannelSendError(f"DingTalk card streaming failed ({status}): {resp}")

    # -- proactive ---------------------------------------------------------

    def infer_is_group(self, target_id: str) -> bool:
        return target_id.startswith("cid")

    async def send_proactive(self, target_id: str, is_group: bool, text: str, title: str = "") -> None:
        if is_markdown(text):
            msg_key = "sampleMarkdown"
            msg_param = {"title": title or markdown_title(text, self.assistant.name), "text": text}
        else:
            msg_key = "sampleText"
            msg_param = {"content": text}
        await self._send_robot_message(target_id, is_group, msg_key, msg_param)

    async def _send_robot_message(
        self, target_id: str, is_group: bool, msg_key: str, msg_param: dict[str, Any]
    ) -> None:
        token = await self.get_access_token()
        payload: dict[str, Any] = {
            "robotCode": self.robot_code,
            "msgKey": msg_key,
            "msgParam": json.dumps(msg_param, ensure_ascii=False),
        }
        if is_group:
            url = f"{DINGTALK_API}/v1.0/robot/groupMessages/send"
            payload["openConversationId"] = target_id
        else:
            url = f"{DINGTALK_API}/v1.0/robot/oToMessages/batchSend"
            payload["userIds"] = [target_id]

        status, body = await self._request(
            "POST", url, json_body=payload, headers={"x-acs-dingtalk-access-token": token}
        )
        code = error_code(body)
        if status >= 400 or code:
            raise ChannelSendError(
                f"DingTalk send to {target_id} failed [{code or status}]",
                code=code or None,
                permission=is_permission_code(code),
            )
        logger.info(f"DingTalk proactive {msg_key} sent to {target_id}")

    # -- media -------------------------------------------------------------

    async def fetch_media(self, ref: MediaRef) -> Path | None:
        token = await self.get_access_token()
        status, body = await self._request(
            "POST",
            f"{DINGTALK_API}/v1.0/robot/messageFiles/download",
            json_body={"downloadCode": ref.code, "robotCode": self.robot_code},
            headers={"x-acs-dingtalk-access-token": token},
        )
        url = body.get("downloadUrl") if isinstance(body, dict) else None
        if status >= 400 or not url:
            logger.warning(f"DingTalk media download URL unavailable ({status}): {error_code(body)}")
            return None
        return await self._downloader.download(str(url), ref.file_name)

    async def upload_media(self, path: Path) -> tuple[str, str]:
        """Upload through the V1 media API; returns (media_id, media_type)."""
        media_type = media_type_for(path)
        token = await self._get_oapi_token()
        with open(path, "rb") as fh:
            status, body = await self._request(
                "POST",
                f"{DINGTALK_OAPI}/media/upload",
                params={"access_token": token, "type": media_type},
                files={"media": (path.name, fh.read())},
            )
        media_id = body.get("media_id") if isinstance(body, dict) else None
        if status >= 400 or not media_id:
            raise ChannelSendError(f"DingTalk media upload failed ({status}): {body}")
        return str(media_id), media_type

    async def send_file(self, message: InboundMessage, path: Path) -> None:
        media_id, media_type = await self.upload_media(path)
        ext = path.suffix.lower().lstrip(".") or "bin"
        if media_type == "voice":
            msg_key, msg_param = "sampleAudio", {"mediaId": media_id, "duration": "1"}
        elif media_type == "image":
            msg_key, msg_param = "sampleImageMsg", {"photoURL": media_id}
        else:
            msg_key, msg_param = "sampleFile", {"mediaId": media_id, "fileName": path.name, "fileType": ext}
        target = message.conversation_id if message.is_group else message.sender_id
        target = self.state.peers.resolve(target)
        await self._send_robot_message(target, message.is_group, msg_key, msg_param)
