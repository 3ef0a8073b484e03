import asyncio
import json

from g_bridge.session.manager import (
    DEFAULT_TITLE,
    ConversationHistory,
    InMemorySessionStore,
    JsonlSessionStore,
    SessionTracker,
)

KEY = ("a1", "conv-1")


class _CountingStore(InMemorySessionStore):
    def __init__(self):
        super().__init__()
        self.create_calls = 0

    async def create_session(self, meta):
        self.create_calls += 1
        await asyncio.sleep(0.01)
        return await super().create_session(meta)


class _TitleGenerator:
    def __init__(self, titles: list[str]):
        self.titles = list(titles)
        self.contexts: list[list[dict[str, str]]] = []

    async def __call__(self, context):
        self.contexts.append(context)
        return self.titles.pop(0)


async def _exchange(tracker: SessionTracker, user: str, reply: str, prefix: str = "") -> None:
    await tracker.record_user(KEY, user)
    await tracker.record_assistant(KEY, reply)
    tracker.schedule_title_update(KEY, prefix)
    await tracker.drain()


def test_history_window_drops_oldest_pairs():
    history = ConversationHistory(max_turns=2)
    for i in range(3):
        history.add("user", f"q{i}")
        history.add("assistant", f"a{i}")

    assert history.turns == 2
    assert [m["content"] for m in history.as_messages()] == ["q1", "a1", "q2", "a2"]


def test_concurrent_first_messages_create_one_session():
    store = _CountingStore()
    tracker = SessionTracker(store)

    async def run():
        return await asyncio.gather(
            tracker.ensure_session(KEY, {"platform": "dingtalk"}),
            tracker.ensure_session(KEY, {"platform": "dingtalk"}),
        )

    first, second = asyncio.run(run())

    assert store.create_calls == 1
    assert first is second
    meta = store.sessions[first.session_id]
    assert meta["assistant_id"] == "a1"
    assert meta["conversation_id"] == "conv-1"
    assert meta["platform"] == "dingtalk"


def test_messages_are_mirrored_to_the_store():
    store = InMemorySessionStore()
    tracker = SessionTracker(store)

    async def run():
        record = await tracker.ensure_session(KEY)
        await tracker.record_user(KEY, "hello")
        await tracker.record_assistant(KEY, "hi!")
        return record

    record = asyncio.run(run())

    assert store.messages[record.session_id] == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi!"},
    ]


def test_titles_generated_after_first_and_third_turns():
    store = InMemorySessionStore()
    generator = _TitleGenerator(["Trip planning", "Kyoto trip budget"])
    tracker = SessionTracker(store, title_generator=generator)

    async def run():
        record = await tracker.ensure_session(KEY)
        await _exchange(tracker, "plan a trip", "sure", prefix="[DingTalk]")
        await _exchange(tracker, "to kyoto", "nice")
        await _exchange(tracker, "budget?", "about 2000")
        await _exchange(tracker, "thanks", "welcome")
        return record

    record = asyncio.run(run())

    assert len(generator.contexts) == 2
    assert len(generator.contexts[1]) == 6
    assert record.title_generations == 2
    assert record.title == "Kyoto trip budget"
    assert store.sessions[record.session_id]["title"] == "Kyoto trip budget"


def test_title_falls_back_to_first_message_when_generation_fails():
    async def failing(context):
        raise RuntimeError("provider down")

    store = InMemorySessionStore()
    tracker = SessionTracker(store, title_generator=failing)
    first = "Can you summarize yesterday's standup notes for the team?"

    async def run():
        record = await tracker.ensure_session(KEY)
        await _exchange(tracker, first, "sure", prefix="[Telegram]")
        return record

    record = asyncio.run(run())

    assert record.title.startswith("[Telegram] Can you summarize")
    assert len(record.title) == len("[Telegram] ") + 30
    assert record.title.endswith("…")


def test_reset_starts_a_new_session():
    store = InMemorySessionStore()
    tracker = SessionTracker(store)

    async def run():
        first = await tracker.ensure_session(KEY)
        await tracker.record_user(KEY, "hello")
        tracker.reset(KEY)
        second = await tracker.ensure_session(KEY)
        return first, second

    first, second = asyncio.run(run())

    assert first.session_id != second.session_id
    assert tracker.history(KEY).as_messages() == []
    assert store.sessions[second.session_id]["title"] == DEFAULT_TITLE


def test_jsonl_store_persists_index_and_messages(tmp_path):
    store = JsonlSessionStore(tmp_path / "sessions")

    async def run():
        session_id = await store.create_session({"assistant_id": "a1", "title": DEFAULT_TITLE})
        await store.record_message(session_id, {"role": "user", "content": "héllo"})
        await store.update_session(session_id, {"title": "Greeting"})
        return session_id

    session_id = asyncio.run(run())

    index = json.loads((tmp_path / "sessions" / "index.json").read_text(encoding="utf-8"))
    assert index[session_id]["title"] == "Greeting"
    assert store.get_session(session_id)["assistant_id"] == "a1"
    messages = store.read_messages(session_id)
    assert messages[0]["content"] == "héllo"
    assert "ts" in messages[0]


def test_failed_turn_does_not_shift_title_triggers():
    store = InMemorySessionStore()
    generator = _TitleGenerator(["Trip planning", "Kyoto trip budget"])
    tracker = SessionTracker(store, title_generator=generator)

    async def run():
        record = await tracker.ensure_session(KEY)
        # the model failed on this turn: only the user message was recorded
        await tracker.record_user(KEY, "plan a trip")
        tracker.schedule_title_update(KEY)
        await tracker.drain()
        await _exchange(tracker, "plan a trip, please", "sure")
        return record

    record = asyncio.run(run())

    assert record.completed_turns == 1
    assert len(generator.contexts) == 1
    assert record.title == "Trip planning"
