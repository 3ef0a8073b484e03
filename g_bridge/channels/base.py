"""Base channel: connection state machine plus the inbound message pipeline."""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from g_bridge.agent.context import ContextBuilder
from g_bridge.agent.loop import AgentLoop
from g_bridge.agent.tools.base import ToolContext
from g_bridge.channels.access import AccessPolicy, is_allowed
from g_bridge.channels.content import ContentExtractor, MediaRef, Transcriber
from g_bridge.channels.events import ChannelStatus, InboundMessage
from g_bridge.channels.streaming import DraftStreamer, DraftTarget, chunk_text
from g_bridge.config.schema import AssistantConfig, ReconnectConfig
from g_bridge.errors import ChannelHandshakeError, ChannelTransportError
from g_bridge.state.context import BridgeState
from g_bridge.utils.tasks import spawn_logged

APOLOGY_REPLY = "Sorry, something went wrong while generating a reply. Please try again."
NEW_SESSION_REPLY = "Started a new conversation. Previous context has been cleared."

StatusListener = Callable[[str, str, ChannelStatus, str], None]


def reconnect_base_delay(attempts: int, initial: float, maximum: float) -> float:
    """Un-jittered backoff: ``min(initial * 2**attempts, maximum)``."""
    return min(initial * (2 ** min(max(attempts, 0), 32)), maximum)


def compute_reconnect_delay(
    attempts: int,
    initial: float,
    maximum: float,
    jitter: float,
    rng: random.Random | None = None,
) -> float:
    """Backoff delay spread uniformly within ``±jitter`` of the base delay."""
    base = reconnect_base_delay(attempts, initial, maximum)
    spread = base * max(jitter, 0.0)
    offset = (rng or random).uniform(-spread, spread) if spread else 0.0
    return max(0.0, base + offset)


@dataclass(slots=True)
class ChannelStats:
    received: int = 0
    processed: int = 0
    skipped: int = 0
    tool_calls: int = 0


class BaseChannel(ABC):
    """
    One connection between an assistant and a chat platform.

    States: disconnected -> connecting -> connected -> error -> connecting
    (retry) or disconnected (explicit stop). A failed ``start()`` is fatal;
    failures after the first successful connect are retried with
    exponential backoff until ``max_connection_attempts``.

    Subclasses provide the transport (``_handshake``, ``_open_transport``,
    ``_read_transport``, ``_close_transport``, ``_check_alive``) and the platform
    send calls.
    """

    name: str = "base"
    message_limit: int = 4000
    title_prefix: str = ""

    def __init__(
        self,
        config: Any,
        assistant: AssistantConfig,
        *,
        state: BridgeState,
        agent: AgentLoop,
        transcriber: Transcriber | None = None,
        stream_interval: float = 1.2,
    ):
        """
        Initialize the channel.

        Args:
            config: Channel-specific configuration.
            assistant: The assistant this connection serves.
            state: Process-wide registries and session tracker.
            agent: Agent loop with this connection's tool registry.
            transcriber: Optional voice transcriber for audio without recognition text.
            stream_interval: Minimum seconds between draft edits.
        """
        self.config = config
        self.assistant = assistant
        self.assistant_id = assistant.id
        self.state = state
        self.agent = agent
        self.context: ContextBuilder = agent.context
        self.reconnect: ReconnectConfig = getattr(config, "reconnect", None) or ReconnectConfig()
        self.policy = AccessPolicy.from_config(config)
        self.stream_interval = stream_interval
        self.extractor = ContentExtractor(self.fetch_media, transcriber)
        self.stats = ChannelStats()

        self.status = ChannelStatus.DISCONNECTED
        self.status_detail = ""
        self.attempts = 0
        self.ever_connected = False
        self._stopped = True
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._message_tasks: set[asyncio.Task[Any]] = set()
        self._inflight: set[str] = set()
        self._status_listeners: list[StatusListener] = []
        self._rng = random.Random()

    # -- transport hooks -------------------------------------------------

    @abstractmethod
    async def _handshake(self) -> Any:
        """Authenticate and negotiate the transport endpoint."""

    @abstractmethod
    async def _open_transport(self, endpoint: Any) -> None:
        """Open the transport; raise if it cannot be opened."""

    @abstractmethod
    async def _read_transport(self) -> None:
        """Consume frames/updates until the transport closes."""

    @abstractmethod
    async def _close_transport(self) -> None:
        """Release the transport handle. Must be safe to call repeatedly."""

    @abstractmethod
    async def _check_alive(self) -> bool:
        """Liveness check used by the heartbeat."""

    # -- platform send hooks ----------------------------------------------

    @abstractmethod
    async def send_reply(self, message: InboundMessage, text: str) -> None:
        """Send one chunk of text through the message's reply handle."""

    @abstractmethod
    async def send_proactive(self, target_id: str, is_group: bool, text: str, title: str = "") -> None:
        """
        Send an unsolicited message.

        Raises:
            ChannelSendError: With ``permission=True`` when the platform
                rejected the target for permission reasons.
        """

    @abstractmethod
    def infer_is_group(self, target_id: str) -> bool:
        """Guess the scope of a bare target id."""

    async def fetch_media(self, ref: MediaRef) -> Path | None:
        """Download inbound media. Channels without media support return None."""
        return None

    def draft_target(self, message: InboundMessage) -> DraftTarget | None:
        """Streaming target for this message, or None to send replies whole."""
        return None

    async def send_file(self, message: InboundMessage, path: Path) -> None:
        raise NotImplementedError(f"{self.name} cannot send files")

    @property
    def supports_files(self) -> bool:
        return type(self).send_file is not BaseChannel.send_file

    async def on_turn_started(self, message: InboundMessage) -> None:
        """Hook for typing indicators."""
        return None

    # -- status ------------------------------------------------------------

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def _set_status(self, status: ChannelStatus, detail: str = "") -> None:
        self.status = status
        self.status_detail = detail
        for listener in list(self._status_listeners):
            try:
                listener(self.assistant_id, self.name, status, detail)
            except Exception as e:
                logger.warning(f"Status listener failed for {self.name}: {e}")

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return not self._stopped

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """
        Connect for the first time.

        Raises:
            ChannelHandshakeError: Handshake or transport open failed. The
                connection is left stopped and is not retried.
        """
        if not self._stopped:
            logger.warning(f"{self.name} channel for {self.assistant_id} already started")
            return
        self._stopped = False
        self.ever_connected = False
        self.attempts = 0
        try:
            await self._connect()
        except Exception as e:
            self._stopped = True
            await self._safe_close_transport()
            self._set_status(ChannelStatus.ERROR, str(e))
            logger.error(f"{self.name} handshake failed for {self.assistant_id}: {e}")
            if isinstance(e, ChannelHandshakeError):
                raise
            raise ChannelHandshakeError(f"{self.name} handshake failed: {e}") from e

    async def stop(self) -> None:
        """Cancel timers and the reader, close the transport; in-flight messages finish."""
        self._stopped = True
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reconnect_task, self._heartbeat_task, self._reader_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reconnect_task = None
        self._heartbeat_task = None
        self._reader_task = None
        await self._safe_close_transport()
        self._set_status(ChannelStatus.DISCONNECTED)
        logger.info(f"{self.name} channel stopped for {self.assistant_id}")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-progress message handling to finish."""
        if self._message_tasks:
            await asyncio.wait(list(self._message_tasks), timeout=timeout)

    async def _connect(self) -> None:
        self._set_status(ChannelStatus.CONNECTING)
        endpoint = await self._handshake()
        await self._open_transport(endpoint)
        if self._stopped:
            await self._safe_close_transport()
            return
        self.ever_connected = True
        self.attempts = 0
        self._set_status(ChannelStatus.CONNECTED)
        logger.info(f"{self.name} connected for assistant {self.assistant_id}")
        self._reader_task = asyncio.create_task(
            self._run_reader(), name=f"{self.name}-reader:{self.assistant_id}"
        )
        self._ensure_heartbeat()

    async def _safe_close_transport(self) -> None:
        try:
            await self._close_transport()
        except Exception as e:
            logger.debug(f"{self.name} transport close error: {e}")

    async def _run_reader(self) -> None:
        reason = "transport closed"
        try:
            await self._read_transport()
        except asyncio.CancelledError:
            raise
        except ChannelTransportError as e:
            reason = str(e)
        except Exception as e:
            reason = f"transport error: {e}"
        if self._stopped:
            return
        logger.warning(f"{self.name} connection lost for {self.assistant_id}: {reason}")
        await self._handle_transport_lost(reason, cancel_reader=False)

    async def _handle_transport_lost(self, reason: str, *, cancel_reader: bool) -> None:
        reader = self._reader_task
        if cancel_reader and reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        self._reader_task = None
        await self._safe_close_transport()
        if self._stopped or not self.ever_connected:
            return
        self._set_status(ChannelStatus.ERROR, reason)
        self.schedule_reconnect()

    def schedule_reconnect(self) -> float | None:
        """Arm the next reconnect attempt; returns the delay, or None if not scheduled."""
        if self._stopped or not self.ever_connected:
            return None
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return None

        max_attempts = self.reconnect.max_connection_attempts
        if self.attempts >= max_attempts:
            detail = f"gave up after {max_attempts} reconnect attempts; restart manually"
            self._set_status(ChannelStatus.ERROR, detail)
            logger.error(f"{self.name} for {self.assistant_id}: {detail}")
            return None

        delay = compute_reconnect_delay(
            self.attempts,
            self.reconnect.initial_reconnect_delay,
            self.reconnect.max_reconnect_delay,
            self.reconnect.reconnect_jitter,
            self._rng,
        )
        self.attempts += 1
        logger.info(
            f"{self.name} reconnect attempt {self.attempts}/{max_attempts} "
            f"for {self.assistant_id} in {delay:.2f}s"
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name=f"{self.name}-reconnect:{self.assistant_id}"
        )
        return delay

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopped:
            return
        try:
            await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{self.name} reconnect failed for {self.assistant_id}: {e}")
            await self._safe_close_transport()
            self._set_status(ChannelStatus.ERROR, str(e))
            self._reconnect_task = None
            self.schedule_reconnect()
            return
        self._reconnect_task = None

    def _ensure_heartbeat(self) -> None:
        if self.reconnect.heartbeat_interval <= 0:
            return
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(), name=f"{self.name}-heartbeat:{self.assistant_id}"
            )

    async def _heartbeat_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.reconnect.heartbeat_interval)
            if self._stopped or self.status != ChannelStatus.CONNECTED:
                continue
            try:
                alive = await asyncio.wait_for(self._check_alive(), timeout=self.reconnect.heartbeat_timeout)
                reason = "heartbeat check failed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                alive = False
                reason = f"heartbeat check error: {e}"
            if not alive and not self._stopped:
                logger.warning(f"{self.name} {reason} for {self.assistant_id}")
                await self._handle_transport_lost(reason, cancel_reader=True)

    # -- inbound pipeline --------------------------------------------------

    def dispatch(self, message: InboundMessage) -> asyncio.Task[Any]:
        """Process ``message`` in its own task so the reader never blocks."""
        message.assistant_id = self.assistant_id
        return spawn_logged(
            self.process_message(message),
            f"{self.name}-message:{message.id}",
            self._message_tasks,
        )

    async def process_message(self, message: InboundMessage) -> bool:
        """
        Run one inbound message through dedup, access, extraction and reply.

        Returns True when the message produced a reply or command response.
        """
        message.assistant_id = self.assistant_id
        self.stats.received += 1
        key = message.dedup_key
        if key:
            if self.state.dedup.is_duplicate(key) or key in self._inflight:
                self.stats.skipped += 1
                logger.debug(f"Duplicate message skipped: {key}")
                return False
            self.state.dedup.mark_processed(key)
            self._inflight.add(key)

        try:
            if not is_allowed(message, self.policy):
                self.stats.skipped += 1
                logger.warning(
                    f"Access denied on {self.name} for sender {message.sender_id} in "
                    f"{message.conversation_id}. Add them to allowFrom to grant access."
                )
                return False
            if message.is_expired():
                self.stats.skipped += 1
                logger.warning(f"Reply handle expired for message {message.id}; skipping")
                return False

            self.state.last_seen.record(self.assistant_id, message.target, message.is_group)
            self.state.peers.register(message.sender_id)
            self.state.peers.register(message.conversation_id)
            self.state.persist()

            extracted = await self.extractor.extract(message.payload)
            if await self._handle_command(message, extracted.text):
                return True
            await self._generate_and_deliver(message, extracted.as_prompt())
            self.stats.processed += 1
            return True
        except Exception as e:
            logger.error(f"{self.name} failed to answer message {message.id}: {e}")
            await self._send_apology(message)
            return False
        finally:
            if key:
                self._inflight.discard(key)

    async def _handle_command(self, message: InboundMessage, text: str) -> bool:
        stripped = text.strip()
        if not stripped.startswith("/"):
            return False
        command = stripped.split()[0].split("@", 1)[0].lower()
        if command == "/myid":
            await self.send_reply(
                message,
                f"Sender ID: {message.sender_id}\n"
                f"Conversation ID: {message.conversation_id}\n"
                f"Scope: {message.scope.value}",
            )
            return True
        if command in ("/new", "/reset"):
            self.state.sessions.reset(message.session_key)
            await self.send_reply(message, NEW_SESSION_REPLY)
            logger.info(f"Conversation reset: {self.assistant_id}/{message.conversation_id}")
            return True
        return False

    def _tool_context(self, message: InboundMessage) -> ToolContext:
        async def send_text(text: str) -> None:
            await self._send_chunks(message, text)

        async def send_file(path: Path) -> None:
            await self.send_file(message, path)

        return ToolContext(
            assistant_id=self.assistant_id,
            conversation_id=message.conversation_id,
            cwd=self.assistant.cwd_path,
            send_text=send_text,
            send_file=send_file if self.supports_files else None,
            extras={"platform": self.name, "sender_id": message.sender_id},
        )

    async def _generate_and_deliver(self, message: InboundMessage, prompt: str) -> None:
        tracker = self.state.sessions
        key = message.session_key
        await tracker.ensure_session(
            key,
            {
                "title": f"{self.title_prefix} {self.assistant.name}".strip(),
                "platform": self.name,
                "model": self.agent.model,
                "cwd": self.assistant.cwd,
            },
        )
        await tracker.record_user(key, prompt)

        system_prompt = self.context.build_system_prompt(
            self.assistant,
            prompt,
            platform=self.name,
            tool_names=self.agent.tools.tool_names,
        )
        target = self.draft_target(message)
        streamer = DraftStreamer(target, self.message_limit, self.stream_interval) if target else None

        await self.on_turn_started(message)
        result = await self.agent.run(
            system_prompt,
            tracker.history(key).as_messages(),
            self._tool_context(message),
            on_delta=streamer.update if streamer else None,
        )
        self.stats.tool_calls += len(result.tool_calls)
        reply = result.content or "(empty reply)"

        await tracker.record_assistant(key, reply)
        tracker.schedule_title_update(key, self.title_prefix)

        if streamer is not None:
            await streamer.finalize(reply)
        else:
            await self._send_chunks(message, reply)

        try:
            self.context.record_exchange(self.assistant, self.name, prompt, reply)
        except Exception as e:
            logger.warning(f"Memory log write failed for {self.assistant_id}: {e}")

    async def _send_chunks(self, message: InboundMessage, text: str) -> None:
        for chunk in chunk_text(text, self.message_limit):
            await self.send_reply(message, chunk)

    async def _send_apology(self, message: InboundMessage) -> None:
        try:
            await self.send_reply(message, APOLOGY_REPLY)
        except Exception as e:
            logger.warning(f"Apology reply failed on {self.name}: {e}")

    # -- proactive helpers ---------------------------------------------------

    def parse_target(self, raw: str) -> tuple[str, bool]:
        """Split ``user:``/``group:`` prefixes; bare ids use ``infer_is_group``."""
        target = raw.strip()
        if target.startswith("user:"):
            return target[len("user:") :], False
        if target.startswith("group:"):
            return target[len("group:") :], True
        return target, self.infer_is_group(target)
