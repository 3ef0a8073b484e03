"""Telegram channel implementation using python-telegram-bot long polling."""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger
from telegram import Bot, Update
from telegram.constants import ChatAction
from telegram.error import BadRequest, Conflict, Forbidden, InvalidToken, TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters
from telegram.request import HTTPXRequest

from g_bridge.channels.base import BaseChannel
from g_bridge.channels.content import (
    FilePayload,
    ImagePayload,
    MediaDownloader,
    MediaRef,
    Payload,
    TextPayload,
    UnsupportedPayload,
    VideoPayload,
    VoicePayload,
)
from g_bridge.channels.events import InboundMessage, Scope
from g_bridge.channels.streaming import DraftTarget
from g_bridge.config.schema import TelegramConfig
from g_bridge.errors import ChannelHandshakeError, ChannelSendError, ChannelTransportError

T = TypeVar("T")

HTTP_TIMEOUT_S = 15.0
START_REPLY = "Hi, I'm {name}. Send a message to start; /new clears the conversation."

_UNSUPPORTED_KINDS = ("sticker", "animation", "location", "contact", "poll", "video_note")


def is_permission_failure(error: TelegramError) -> bool:
    """Bot blocked, kicked, or pointed at a chat it cannot see."""
    if isinstance(error, Forbidden):
        return True
    return isinstance(error, BadRequest) and "chat not found" in error.message.lower()


def _error_code(error: TelegramError) -> str:
    if isinstance(error, Forbidden):
        return "403"
    if isinstance(error, BadRequest):
        return "400"
    return type(error).__name__


def parse_payload(msg: dict[str, Any]) -> Payload:
    caption = str(msg.get("caption") or "")
    if msg.get("voice") or msg.get("audio"):
        media = msg.get("voice") or msg.get("audio")
        return VoicePayload(media=MediaRef(code=str(media.get("file_id") or "")))
    if msg.get("photo"):
        largest = msg["photo"][-1]
        return ImagePayload(media=MediaRef(code=str(largest.get("file_id") or "")), caption=caption)
    if msg.get("video"):
        return VideoPayload(media=MediaRef(code=str(msg["video"].get("file_id") or "")), caption=caption)
    if msg.get("document"):
        document = msg["document"]
        file_name = str(document.get("file_name") or "")
        return FilePayload(
            media=MediaRef(code=str(document.get("file_id") or ""), file_name=file_name),
            file_name=file_name,
            caption=caption,
        )
    if "text" in msg:
        return TextPayload(text=str(msg.get("text") or ""))
    for kind in _UNSUPPORTED_KINDS:
        if kind in msg:
            return UnsupportedPayload(kind=kind, text=caption)
    return UnsupportedPayload(kind="unknown", text=caption)


class _MessageDraft:
    """Streams a reply by editing one sent message in place."""

    def __init__(self, channel: "TelegramChannel", chat_id: Any):
        self._channel = channel
        self._chat_id = chat_id

    async def create_draft(self, text: str) -> int:
        sent = await self._channel._call(
            "sendMessage", lambda bot: bot.send_message(chat_id=self._chat_id, text=text)
        )
        return sent.message_id

    async def edit_draft(self, handle: Any, text: str, final: bool = False) -> None:
        try:
            await self._channel._call(
                "editMessageText",
                lambda bot: bot.edit_message_text(text=text, chat_id=self._chat_id, message_id=handle),
            )
        except ChannelSendError as e:
            if "message is not modified" not in str(e).lower():
                raise

    async def discard_draft(self, handle: Any) -> None:
        await self._channel._call(
            "deleteMessage", lambda bot: bot.delete_message(chat_id=self._chat_id, message_id=handle)
        )

    async def send_text(self, text: str) -> None:
        await self._channel._call("sendMessage", lambda bot: bot.send_message(chat_id=self._chat_id, text=text))


class TelegramChannel(BaseChannel):
    """
    Telegram bot using python-telegram-bot's ``Application`` and updater.

    ``start()`` initializes the application (which authenticates the token)
    and starts long polling. Fatal polling errors, such as another process
    polling with the same token, end the transport and hand control to the
    reconnect loop.
    """

    name = "telegram"
    message_limit = 4096
    title_prefix = "[Telegram]"

    def __init__(self, config: TelegramConfig, assistant, **kwargs: Any):
        super().__init__(config, assistant, **kwargs)
        self.config: TelegramConfig = config
        self.bot_id = ""
        self.bot_username = ""
        self._app: Application | None = None
        self._transport_lost: asyncio.Future[str] | None = None
        self._downloader = MediaDownloader(prefix="telegram")

    def _build_application(self) -> Application:
        builder = (
            Application.builder()
            .token(self.config.token)
            .connect_timeout(HTTP_TIMEOUT_S)
            .read_timeout(HTTP_TIMEOUT_S)
            .write_timeout(HTTP_TIMEOUT_S)
            .pool_timeout(HTTP_TIMEOUT_S)
            .get_updates_connect_timeout(HTTP_TIMEOUT_S)
            .get_updates_read_timeout(self.config.poll_timeout + HTTP_TIMEOUT_S)
            .get_updates_write_timeout(HTTP_TIMEOUT_S)
            .get_updates_pool_timeout(HTTP_TIMEOUT_S)
        )
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        app = builder.build()
        app.add_handler(MessageHandler(filters.ALL, self._on_update))
        return app

    @asynccontextmanager
    async def _bot(self) -> AsyncIterator[Bot]:
        """The live application's bot, or a short-lived one for sends while not started."""
        if self._app is not None:
            yield self._app.bot
            return
        request = HTTPXRequest(proxy=self.config.proxy) if self.config.proxy else None
        async with Bot(self.config.token, request=request) as bot:
            yield bot

    async def _call(self, method: str, fn: Callable[[Bot], Awaitable[T]]) -> T:
        try:
            async with self._bot() as bot:
                return await fn(bot)
        except TelegramError as e:
            code = _error_code(e)
            raise ChannelSendError(
                f"Telegram {method} failed ({code}): {e.message}",
                code=code,
                permission=is_permission_failure(e),
            ) from e

    # -- transport ---------------------------------------------------------

    async def _handshake(self) -> None:
        if not self.config.token:
            raise ChannelHandshakeError("Telegram bot token not configured")
        self._app = self._build_application()
        try:
            await self._app.initialize()
            me = await self._app.bot.get_me()
        except InvalidToken as e:
            raise ChannelHandshakeError(f"Telegram rejected the bot token: {e}") from e
        except TelegramError as e:
            raise ChannelHandshakeError(f"Telegram handshake failed: {e}") from e
        self.bot_id = str(me.id or "")
        self.bot_username = str(me.username or "")
        logger.info(f"Telegram bot @{self.bot_username} authenticated")

    async def _open_transport(self, endpoint: Any) -> None:
        self._transport_lost = asyncio.get_running_loop().create_future()
        await self._app.start()
        await self._app.updater.start_polling(
            timeout=self.config.poll_timeout,
            allowed_updates=["message"],
            drop_pending_updates=False,
            error_callback=self._on_polling_error,
        )

    def _on_polling_error(self, error: TelegramError) -> None:
        if isinstance(error, (InvalidToken, Conflict, Forbidden)):
            lost = self._transport_lost
            if lost is not None and not lost.done():
                lost.set_result(f"Telegram polling stopped: {error}")
            return
        logger.debug(f"Telegram polling error (retrying): {error}")

    async def _read_transport(self) -> None:
        if self._transport_lost is None:
            return
        reason = await self._transport_lost
        raise ChannelTransportError(reason)

    async def _close_transport(self) -> None:
        app, self._app = self._app, None
        if app is None:
            return
        try:
            if app.updater is not None and app.updater.running:
                await app.updater.stop()
            if app.running:
                await app.stop()
        finally:
            await app.shutdown()

    async def _check_alive(self) -> bool:
        await self._call("getMe", lambda bot: bot.get_me())
        return True

    # -- inbound -----------------------------------------------------------

    async def _on_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = self.parse_update(update.to_dict())
        if message is not None:
            self.dispatch(message)

    def _is_addressed(self, msg: dict[str, Any], text: str) -> bool:
        if self.bot_username and f"@{self.bot_username}".lower() in text.lower():
            return True
        reply_to = msg.get("reply_to_message") or {}
        replied_id = str((reply_to.get("from") or {}).get("id") or "")
        return bool(self.bot_id) and replied_id == self.bot_id

    def _strip_bot_mention(self, text: str) -> str:
        if not self.bot_username:
            return text
        return re.sub(rf"@{re.escape(self.bot_username)}\b", "", text, flags=re.IGNORECASE).strip()

    def parse_update(self, update: dict[str, Any]) -> InboundMessage | None:
        """Normalize an update; None for bots, non-messages and unaddressed group chatter."""
        msg = update.get("message")
        if not isinstance(msg, dict):
            return None
        chat = msg.get("chat") or {}
        sender = msg.get("from") or {}
        if sender.get("is_bot"):
            return None

        is_group = chat.get("type") in ("group", "supergroup")
        text = str(msg.get("text") or msg.get("caption") or "")
        if is_group and self.config.require_mention and not self._is_addressed(msg, text):
            logger.debug(f"Ignoring unaddressed group message in {chat.get('id')}")
            return None

        payload = parse_payload(msg)
        if isinstance(payload, TextPayload):
            payload = TextPayload(text=self._strip_bot_mention(payload.text))
        elif isinstance(payload, (ImagePayload, VideoPayload)) and payload.caption:
            payload = type(payload)(media=payload.media, caption=self._strip_bot_mention(payload.caption))

        chat_id = chat.get("id")
        return InboundMessage(
            id=f"{chat_id}:{msg.get('message_id')}",
            conversation_id=str(chat_id),
            scope=Scope.GROUP if is_group else Scope.DIRECT,
            sender_id=str(sender.get("id") or ""),
            sender_name=str(sender.get("username") or sender.get("first_name") or ""),
            payload=payload,
            reply_handle=chat_id,
            raw=msg,
        )

    async def _handle_command(self, message: InboundMessage, text: str) -> bool:
        words = text.split()
        if words and words[0].split("@", 1)[0].lower() == "/start":
            await self.send_reply(message, START_REPLY.format(name=self.assistant.name))
            return True
        return await super()._handle_command(message, text)

    async def fetch_media(self, ref: MediaRef) -> Path | None:
        async with self._bot() as bot:
            tg_file = await bot.get_file(ref.code)
            if tg_file.file_size and tg_file.file_size > self._downloader.max_bytes:
                logger.warning(f"Telegram media too large ({tg_file.file_size} bytes), skipping download")
                return None
            data = await tg_file.download_as_bytearray()
        file_name = ref.file_name or Path(tg_file.file_path or "").name
        return self._downloader.save_bytes(bytes(data), file_name)

    # -- outbound ----------------------------------------------------------

    async def send_reply(self, message: InboundMessage, text: str) -> None:
        await self._call("sendMessage", lambda bot: bot.send_message(chat_id=message.reply_handle, text=text))

    def draft_target(self, message: InboundMessage) -> DraftTarget | None:
        if not self.config.streaming:
            return None
        return _MessageDraft(self, message.reply_handle)

    async def on_turn_started(self, message: InboundMessage) -> None:
        try:
            await self._call(
                "sendChatAction",
                lambda bot: bot.send_chat_action(chat_id=message.reply_handle, action=ChatAction.TYPING),
            )
        except ChannelSendError as e:
            logger.debug(f"Typing indicator failed: {e}")

    async def send_file(self, message: InboundMessage, path: Path) -> None:
        await self._call(
            "sendDocument",
            lambda bot: bot.send_document(
                chat_id=message.reply_handle,
                document=path.read_bytes(),
                filename=path.name,
            ),
        )

    def infer_is_group(self, target_id: str) -> bool:
        return target_id.startswith("-")

    async def send_proactive(self, target_id: str, is_group: bool, text: str, title: str = "") -> None:
        await self._call("sendMessage", lambda bot: bot.send_message(chat_id=target_id, text=text))
        logger.info(f"Telegram proactive message sent to {target_id}")
