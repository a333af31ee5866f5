"""Tests for the session store."""

import json
import logging
from datetime import timedelta

import pytest

from crater_chat.core import ImageStates, generate_title
from crater_chat.serializer import serialize_session
from crater_chat.store import SessionNotFoundError, SessionStore
from crater_chat.tiers.keyvalue import LEGACY_HISTORY_KEY, SESSIONS_KEY

from .conftest import RecordingBackend, make_image_message


def fresh_store(storage_dir, scheduler):
    return SessionStore(RecordingBackend(storage_dir), delay=0.5, scheduler=scheduler, batch_window=0)


class TestCurrentSession:
    def test_lazily_created(self, store):
        assert store.current_session_id is None
        session = store.get_current_session()
        assert store.current_session_id == session.id
        assert session.id.startswith("session_")
        assert session.title.startswith("Chat ")
        assert [s.id for s in store.list_summaries()] == [session.id]

    def test_same_session_returned(self, store):
        assert store.get_current_session() is store.get_current_session()

    def test_first_user_message_names_session(self, store, scheduler):
        store.add_user_message("Pixel art knight with a glowing sword")
        session = store.get_current_session()
        assert session.title == "Pixel art knight with a glowin..."
        assert store.writer.has_pending(session.id)

    def test_append_updates_last_activity(self, store):
        session = store.get_current_session()
        session.last_activity -= timedelta(days=1)
        before = session.last_activity
        store.add_assistant_message("hello")
        assert session.last_activity > before
        assert session.messages[-1].message_type == "text"


class TestAppendToSession:
    @pytest.mark.asyncio
    async def test_appends_to_named_session(self, store):
        first = store.get_current_session()
        second = await store.create_session()

        store.add_assistant_message("late reply", session_id=first.id)

        assert [m.text for m in first.messages] == ["late reply"]
        assert second.messages == []
        assert store.current_session_id == second.id
        assert store.writer.has_pending(first.id)

    def test_unknown_session(self, store):
        with pytest.raises(SessionNotFoundError):
            store.add_user_message("hello", session_id="session_nope")
        assert store.current_session is None

    def test_current_session_is_never_created(self, store):
        assert store.current_session is None
        session = store.get_current_session()
        assert store.current_session is session


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_prepends_and_persists_index(self, store, storage_dir):
        first = store.get_current_session()
        second = await store.create_session()

        assert store.current_session_id == second.id
        assert second.messages == []
        index = json.loads((storage_dir / "index.json").read_text(encoding="utf-8"))
        assert [s["id"] for s in index["sessions"]] == [second.id, first.id]
        assert index["currentSessionId"] == second.id

    @pytest.mark.asyncio
    async def test_flushes_outgoing_session(self, store, backend):
        store.add_user_message("castle")
        outgoing = store.current_session_id

        await store.create_session()

        writes = backend.writes_for(outgoing)
        assert len(writes) == 1
        assert writes[0]["messages"][0]["text"] == "castle"
        assert not store.writer.has_pending(outgoing)


class TestSwitchSession:
    @pytest.mark.asyncio
    async def test_unknown_id_leaves_current_unchanged(self, store):
        current = store.get_current_session()
        with pytest.raises(SessionNotFoundError):
            await store.switch_session("session_nope")
        assert store.current_session_id == current.id

    @pytest.mark.asyncio
    async def test_flush_before_switch(self, storage_dir, scheduler):
        setup = fresh_store(storage_dir, scheduler)
        ids = []
        for prompt in ("alpha", "charlie", "bravo"):
            await setup.create_session()
            setup.add_user_message(prompt)
            ids.append(setup.current_session_id)
        await setup.flush()
        alpha, charlie, _ = ids

        store = fresh_store(storage_dir, scheduler)
        await store.load()
        await store.switch_session(alpha)
        store.add_assistant_message("alpha reply")
        store.backend.events.clear()

        await store.switch_session(charlie)

        assert store.backend.events == [("save", alpha), ("load", charlie)]
        reloaded = await store.backend.load_session(alpha)
        assert [m.text for m in reloaded.messages] == ["alpha", "alpha reply"]
        assert store.current_session_id == charlie
        assert [m.text for m in store.get_current_session().messages] == ["charlie"]

    @pytest.mark.asyncio
    async def test_switch_bumps_last_activity(self, store):
        first = store.get_current_session()
        second = await store.create_session()
        first.last_activity -= timedelta(hours=1)

        await store.switch_session(first.id)

        assert [s.id for s in store.list_summaries()] == [first.id, second.id]


class TestLoad:
    @pytest.mark.asyncio
    async def test_restores_current_session_after_restart(self, store, storage_dir, scheduler, image_files):
        store.add_user_message("a red dragon sprite")
        store.append_message(make_image_message(image_files))
        session = store.get_current_session()
        store.images.apply_states(session, 1, ImageStates(deleted=[False, False], hidden=[True, False]))
        await store.close()

        restarted = fresh_store(storage_dir, scheduler)
        await restarted.load()

        restored = restarted.get_current_session()
        assert restored.id == session.id
        assert restored.title == "a red dragon sprite"
        image_data = restored.messages[1].image_data
        assert image_data.images == []
        assert image_data.saved_file_paths == image_files
        assert image_data.image_states.hidden == [True, False]
        assert image_data.cost == {"totalCost": 0.039, "currency": "USD"}

    @pytest.mark.asyncio
    async def test_unknown_current_id_is_cleared(self, store, backend, scheduler):
        session = store.get_current_session()
        await backend.save_index([session.summary()], "session_ghost")

        restarted = SessionStore(backend, delay=0.5, scheduler=scheduler)
        await restarted.load()
        assert restarted.current_session_id is None

    @pytest.mark.asyncio
    async def test_missing_session_record_loads_empty(self, store, backend):
        session = store.get_current_session()
        await backend.save_index([session.summary()], session.id)

        restarted = SessionStore(backend, delay=0.5)
        await restarted.load()
        restored = restarted.get_current_session()
        assert restored.id == session.id
        assert restored.messages == []

    @pytest.mark.asyncio
    async def test_reads_oldest_format(self, backend, image_session, scheduler):
        backend.kv_store.set(SESSIONS_KEY, [serialize_session(image_session)])
        backend.kv_store.set("crater.currentSessionId", image_session.id)

        store = SessionStore(backend, delay=0.5, scheduler=scheduler)
        await store.load()

        assert store.current_session_id == image_session.id
        assert len(store.get_current_session().messages) == 2

    @pytest.mark.asyncio
    async def test_migrates_legacy_history(self, backend, scheduler, storage_dir):
        backend.kv_store.set(LEGACY_HISTORY_KEY, [
            {"id": "1", "text": "tree", "sender": "user", "timestamp": "2024-11-02T08:00:00.000Z"},
        ])

        store = SessionStore(backend, delay=0.5, scheduler=scheduler)
        await store.load()

        session = store.get_current_session()
        assert session.title == "tree"
        assert [m.text for m in session.messages] == ["tree"]
        index = json.loads((storage_dir / "index.json").read_text(encoding="utf-8"))
        assert index["currentSessionId"] == session.id


class TestPersistenceFailures:
    @pytest.mark.asyncio
    async def test_serialization_failure_skips_write(self, store, backend, image_files, caplog):
        store.append_message(make_image_message(image_files))
        session = store.get_current_session()
        session.messages[0].image_data.image_states = ImageStates(deleted=[True], hidden=[False])

        with caplog.at_level(logging.ERROR, logger="crater_chat.store"):
            await store.flush()

        assert backend.writes == []
        assert "Skipping write" in caplog.text
        assert session.messages[0].image_data.image_states.deleted == [True]

    @pytest.mark.asyncio
    async def test_write_failure_is_logged(self, store, backend, caplog):
        store.add_user_message("hello")
        backend.storage_path.mkdir(parents=True)
        (backend.storage_path / "sessions").write_text("not a directory", encoding="utf-8")

        with caplog.at_level(logging.ERROR, logger="crater_chat.storage"):
            await store.flush()

        assert "Failed to write session" in caplog.text
        assert store.get_current_session().messages[0].text == "hello"

    @pytest.mark.asyncio
    async def test_kill_switch_drops_scheduled_writes(self, backend, scheduler):
        store = SessionStore(backend, delay=0.5, scheduler=scheduler, persistence_enabled=False)
        store.add_user_message("hello")
        scheduler.advance(1.0)
        await store.close()
        assert backend.writes == []


def test_generate_title_without_user_message():
    assert generate_title([]).startswith("Chat ")
