"""Per-conversation history, session records, and detached title generation."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from g_bridge.utils.helpers import ensure_dir, truncate_text
from g_bridge.utils.tasks import spawn_logged

MAX_TURNS = 10
TITLE_CONTEXT_MESSAGES = 6
TITLE_FALLBACK_CHARS = 30
DEFAULT_TITLE = "New Session"

SessionKey = tuple[str, str]
TitleGenerator = Callable[[list[dict[str, str]]], Awaitable[str]]


class SessionStore(Protocol):
    """External store that mirrors bridge conversations."""

    async def create_session(self, meta: dict[str, Any]) -> str: ...

    async def record_message(self, session_id: str, event: dict[str, Any]) -> None: ...

    async def update_session(self, session_id: str, patch: dict[str, Any]) -> None: ...


class InMemorySessionStore:
    """Session store kept in process memory."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[dict[str, Any]]] = {}

    async def create_session(self, meta: dict[str, Any]) -> str:
        session_id = uuid.uuid4().hex
        self.sessions[session_id] = {"id": session_id, **meta}
        self.messages[session_id] = []
        return session_id

    async def record_message(self, session_id: str, event: dict[str, Any]) -> None:
        self.messages.setdefault(session_id, []).append(event)

    async def update_session(self, session_id: str, patch: dict[str, Any]) -> None:
        self.sessions.setdefault(session_id, {"id": session_id}).update(patch)


class JsonlSessionStore:
    """
    Session store backed by one JSONL file per session.

    ``index.json`` holds session metadata (title, assistant, conversation);
    each ``<session_id>.jsonl`` holds the message events in order.
    """

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = ensure_dir(Path(sessions_dir).expanduser())
        self.index_path = self.sessions_dir / "index.json"

    def _load_index(self) -> dict[str, dict[str, Any]]:
        if not self.index_path.exists():
            return {}
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Session index unreadable, starting fresh: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save_index(self, index: dict[str, dict[str, Any]]) -> None:
        tmp_path = self.index_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(index, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self.index_path)

    async def create_session(self, meta: dict[str, Any]) -> str:
        session_id = uuid.uuid4().hex
        index = self._load_index()
        index[session_id] = {"id": session_id, "created_at": time.time(), **meta}
        self._save_index(index)
        (self.sessions_dir / f"{session_id}.jsonl").touch()
        return session_id

    async def record_message(self, session_id: str, event: dict[str, Any]) -> None:
        line = json.dumps({"ts": time.time(), **event}, ensure_ascii=False)
        with open(self.sessions_dir / f"{session_id}.jsonl", "a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def update_session(self, session_id: str, patch: dict[str, Any]) -> None:
        index = self._load_index()
        index.setdefault(session_id, {"id": session_id}).update(patch)
        self._save_index(index)

    def read_messages(self, session_id: str) -> list[dict[str, Any]]:
        path = self.sessions_dir / f"{session_id}.jsonl"
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        return self._load_index().get(session_id)


@dataclass
class ConversationHistory:
    """Sliding window of chat messages; oldest pair dropped first."""

    max_turns: int = MAX_TURNS
    messages: list[dict[str, str]] = field(default_factory=list)

    def add(self, role: str, content: str) -> None:
        self.messages.append({"role": role, "content": content})
        overflow = len(self.messages) - self.max_turns * 2
        if overflow > 0:
            del self.messages[:overflow]

    def clear(self) -> None:
        self.messages.clear()

    @property
    def turns(self) -> int:
        return len(self.messages) // 2

    def as_messages(self) -> list[dict[str, str]]:
        return [dict(m) for m in self.messages]


@dataclass
class SessionRecord:
    session_id: str
    title: str = ""
    title_generations: int = 0
    first_message: str = ""
    completed_turns: int = 0


class SessionTracker:
    """
    History and session bookkeeping keyed by ``(assistant_id, conversation_id)``.

    Each conversation owns its own history buffer and record, so concurrent
    conversations on one connection never share mutable state.
    """

    def __init__(
        self,
        store: SessionStore,
        title_generator: TitleGenerator | None = None,
        max_turns: int = MAX_TURNS,
    ):
        self.store = store
        self.title_generator = title_generator
        self.max_turns = max_turns
        self._histories: dict[SessionKey, ConversationHistory] = {}
        self._records: dict[SessionKey, SessionRecord] = {}
        self._pending: dict[SessionKey, asyncio.Future[SessionRecord]] = {}
        self._title_tasks: set[asyncio.Task[Any]] = set()

    def history(self, key: SessionKey) -> ConversationHistory:
        history = self._histories.get(key)
        if history is None:
            history = ConversationHistory(max_turns=self.max_turns)
            self._histories[key] = history
        return history

    def record(self, key: SessionKey) -> SessionRecord | None:
        return self._records.get(key)

    async def ensure_session(self, key: SessionKey, meta: dict[str, Any] | None = None) -> SessionRecord:
        """Create the session on first use; later calls return the same record."""
        existing = self._records.get(key)
        if existing is not None:
            return existing
        pending = self._pending.get(key)
        if pending is not None:
            return await pending

        future: asyncio.Future[SessionRecord] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            assistant_id, conversation_id = key
            session_id = await self.store.create_session(
                {
                    "assistant_id": assistant_id,
                    "conversation_id": conversation_id,
                    "title": DEFAULT_TITLE,
                    **(meta or {}),
                }
            )
            record = SessionRecord(session_id=session_id, title=DEFAULT_TITLE)
            self._records[key] = record
            future.set_result(record)
            logger.info(f"Session {session_id} created for {assistant_id}/{conversation_id}")
            return record
        except Exception as e:
            future.set_exception(e)
            # consume so an unawaited future does not warn
            future.exception()
            raise
        finally:
            self._pending.pop(key, None)

    async def record_user(self, key: SessionKey, content: str) -> None:
        self.history(key).add("user", content)
        record = self._records.get(key)
        if record is None:
            return
        if not record.first_message:
            record.first_message = content
        await self._mirror(record, "user", content)

    async def record_assistant(self, key: SessionKey, content: str) -> None:
        self.history(key).add("assistant", content)
        record = self._records.get(key)
        if record is not None:
            record.completed_turns += 1
            await self._mirror(record, "assistant", content)

    async def _mirror(self, record: SessionRecord, role: str, content: str) -> None:
        try:
            await self.store.record_message(record.session_id, {"role": role, "content": content})
        except Exception as e:
            logger.warning(f"Session store write failed for {record.session_id}: {e}")

    def reset(self, key: SessionKey) -> None:
        """Clear history and unbind the session; the next message starts a new one."""
        self.history(key).clear()
        self._records.pop(key, None)

    def should_generate_title(self, key: SessionKey) -> bool:
        record = self._records.get(key)
        if record is None:
            return False
        # count replies, not history length: failed turns leave a lone user message
        turns = record.completed_turns
        return turns == 1 or (turns == 3 and record.title_generations < 2)

    def schedule_title_update(self, key: SessionKey, prefix: str = "") -> asyncio.Task[Any] | None:
        """Start detached title generation when the turn count calls for it."""
        if not self.should_generate_title(key):
            return None
        record = self._records[key]
        context = self.history(key).as_messages()[-TITLE_CONTEXT_MESSAGES:]
        return spawn_logged(
            self._update_title(record, context, prefix),
            f"session-title:{record.session_id}",
            self._title_tasks,
        )

    async def _update_title(self, record: SessionRecord, context: list[dict[str, str]], prefix: str) -> None:
        title = ""
        if self.title_generator is not None:
            try:
                title = (await self.title_generator(context)).strip().strip('"')
            except Exception as e:
                logger.warning(f"Title generation failed for {record.session_id}: {e}")
        if not title or title == DEFAULT_TITLE:
            if record.title_generations > 0:
                return
            title = truncate_text(record.first_message.strip().replace("\n", " "), TITLE_FALLBACK_CHARS)
            if not title:
                return
        full_title = f"{prefix} {title}".strip() if prefix else title
        record.title = full_title
        record.title_generations += 1
        await self.store.update_session(record.session_id, {"title": full_title})
        logger.debug(f"Session {record.session_id} titled: {full_title}")

    async def drain(self) -> None:
        """Wait for pending title tasks (used on shutdown and in tests)."""
        if self._title_tasks:
            await asyncio.gather(*list(self._title_tasks), return_exceptions=True)
