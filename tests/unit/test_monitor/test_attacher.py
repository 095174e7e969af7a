"""Tests for SessionAttacher: attach, detach, reconcile, watermark."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import pytest

from abpctl.monitor.attacher import SessionAttacher
from abpctl.monitor.models import AttachFailure


@pytest.fixture
def attacher(fake_engine, hub):
    return SessionAttacher(fake_engine.client(), hub, debounce=0.05, watch_interval=0.05)


def _session_changes(events: list[dict]) -> list[str]:
    return [e["session_dir"] for e in events if e["type"] == "session_changed"]


class TestAttach:
    @pytest.mark.asyncio
    async def test_engine_unreachable(self, attacher: SessionAttacher) -> None:
        result = await attacher.attach()
        assert not result.attached
        assert result.reason is AttachFailure.NOT_ATTACHED
        assert attacher.store is None

    @pytest.mark.asyncio
    async def test_no_database(self, attacher: SessionAttacher, fake_engine, tmp_path: Path) -> None:
        fake_engine.ready = True
        fake_engine.session_dir = str(tmp_path / "empty")
        result = await attacher.attach()
        assert result.reason is AttachFailure.NOT_ATTACHED
        assert not attacher.is_attached

    @pytest.mark.asyncio
    async def test_no_active_session(
        self, attacher: SessionAttacher, fake_engine, history_db, hub, drain
    ) -> None:
        queue = hub.subscribe()
        fake_engine.ready = True
        fake_engine.session_dir = str(history_db.session_dir)
        result = await attacher.attach()
        assert not result.attached
        assert result.reason is AttachFailure.NO_ACTIVE_SESSION
        assert attacher.store is None
        assert drain(queue) == []

    @pytest.mark.asyncio
    async def test_attached(
        self, attacher: SessionAttacher, fake_engine, populated_db, hub, drain
    ) -> None:
        queue = hub.subscribe()
        fake_engine.ready = True
        fake_engine.session_dir = str(populated_db.session_dir)
        result = await attacher.attach()

        expected_dir = str(populated_db.session_dir.resolve())
        assert result.attached
        assert result.session_dir == expected_dir
        assert result.session_id == "1"
        assert attacher.watermark == 2
        assert drain(queue) == [{"type": "session_changed", "session_dir": expected_dir}]
        await attacher.aclose()

    @pytest.mark.asyncio
    async def test_same_directory_is_noop(
        self, attacher: SessionAttacher, fake_engine, populated_db, hub, drain
    ) -> None:
        queue = hub.subscribe()
        fake_engine.ready = True
        fake_engine.session_dir = str(populated_db.session_dir)
        await attacher.attach()
        store = attacher.store
        again = await attacher.attach()
        assert again.attached
        assert attacher.store is store
        assert len(_session_changes(drain(queue))) == 1
        await attacher.aclose()

    @pytest.mark.asyncio
    async def test_new_directory_closes_previous(
        self, attacher: SessionAttacher, fake_engine, populated_db, make_history_db
    ) -> None:
        fake_engine.ready = True
        fake_engine.session_dir = str(populated_db.session_dir)
        await attacher.attach()
        first = attacher.store

        other = make_history_db("20250202000000")
        other.add_session(7)
        fake_engine.session_dir = str(other.session_dir)
        result = await attacher.attach()

        assert result.attached
        assert result.session_id == "7"
        assert first.closed
        assert attacher.watermark == 0
        await attacher.aclose()

    @pytest.mark.asyncio
    async def test_failed_handoff_announces_detach(
        self, attacher: SessionAttacher, fake_engine, populated_db, make_history_db, hub, drain
    ) -> None:
        fake_engine.ready = True
        fake_engine.session_dir = str(populated_db.session_dir)
        await attacher.attach()
        first = attacher.store
        queue = hub.subscribe()

        empty = make_history_db("20250303000000")
        fake_engine.session_dir = str(empty.session_dir)
        result = await attacher.attach()

        assert result.reason is AttachFailure.NO_ACTIVE_SESSION
        assert first.closed
        assert attacher.store is None
        assert attacher.session_dir is None
        assert drain(queue) == [{"type": "session_changed", "session_dir": ""}]

    @pytest.mark.asyncio
    async def test_attach_until_retries(
        self, attacher: SessionAttacher, fake_engine, populated_db
    ) -> None:
        fake_engine.ready = True

        async def publish_later() -> None:
            await asyncio.sleep(0.1)
            fake_engine.session_dir = str(populated_db.session_dir)

        task = asyncio.create_task(publish_later())
        result = await attacher.attach_until(timeout=2.0, interval=0.05)
        await task
        assert result.attached
        await attacher.aclose()

    @pytest.mark.asyncio
    async def test_attach_until_gives_up(self, attacher: SessionAttacher) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await attacher.attach_until(timeout=0.2, interval=0.05)
        assert not result.attached
        assert loop.time() - started < 1.0


class TestReconcile:
    @pytest.mark.asyncio
    async def test_offline_online_offline(
        self, attacher: SessionAttacher, fake_engine, populated_db, hub, drain
    ) -> None:
        queue = hub.subscribe()
        fake_engine.session_dir = str(populated_db.session_dir)

        assert await attacher.check_status() is False
        fake_engine.ready = True
        assert await attacher.check_status() is True
        store = attacher.store
        assert store is not None
        assert await attacher.check_status() is True

        fake_engine.ready = False
        assert await attacher.check_status() is False
        assert await attacher.check_status() is False

        changes = _session_changes(drain(queue))
        assert changes == [str(populated_db.session_dir.resolve()), ""]
        assert store.closed
        assert attacher.store is None
        assert attacher.session_dir is None

    @pytest.mark.asyncio
    async def test_reachable_without_store_retries(
        self, attacher: SessionAttacher, fake_engine, populated_db
    ) -> None:
        fake_engine.ready = True
        await attacher.reconcile(True)
        assert attacher.store is None

        fake_engine.session_dir = str(populated_db.session_dir)
        await attacher.reconcile(True)
        assert attacher.is_attached
        await attacher.aclose()


    @pytest.mark.asyncio
    async def test_overlapping_offline_polls_detach_once(
        self, attacher: SessionAttacher, fake_engine, populated_db, hub, drain
    ) -> None:
        fake_engine.ready = True
        fake_engine.session_dir = str(populated_db.session_dir)
        assert await attacher.check_status() is True
        queue = hub.subscribe()

        await asyncio.gather(attacher.reconcile(False), attacher.reconcile(False))

        assert _session_changes(drain(queue)) == [""]
        assert attacher.store is None


class TestWatermark:
    @pytest.mark.asyncio
    async def test_monotonic(self, attacher: SessionAttacher, hub, drain) -> None:
        queue = hub.subscribe()
        assert attacher.advance_watermark(5) is True
        assert attacher.advance_watermark(3) is False
        assert attacher.advance_watermark(5) is False
        assert attacher.advance_watermark(6) is True
        assert attacher.watermark == 6
        assert drain(queue) == [
            {"type": "refresh", "maxId": 5},
            {"type": "refresh", "maxId": 6},
        ]

    @pytest.mark.asyncio
    async def test_new_action_triggers_refresh(
        self, attacher: SessionAttacher, fake_engine, populated_db, hub, drain
    ) -> None:
        fake_engine.ready = True
        fake_engine.session_dir = str(populated_db.session_dir)
        await attacher.attach()
        queue = hub.subscribe()

        populated_db.add_action(1, "scroll")
        for _ in range(60):
            if attacher.watermark == 3:
                break
            await asyncio.sleep(0.05)

        assert attacher.watermark == 3
        assert {"type": "refresh", "maxId": 3} in drain(queue)
        await attacher.aclose()

    @pytest.mark.asyncio
    async def test_locked_database_keeps_watermark(
        self, attacher: SessionAttacher, fake_engine, populated_db, hub, drain, monkeypatch
    ) -> None:
        fake_engine.ready = True
        fake_engine.session_dir = str(populated_db.session_dir)
        await attacher.attach()
        store = attacher.store
        queue = hub.subscribe()

        def locked(session_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store, "max_action_id", locked)
        populated_db.add_action(1, "scroll")
        await asyncio.sleep(0.5)
        assert attacher.watermark == 2
        assert drain(queue) == []

        # The next change is picked up once the lock is gone
        monkeypatch.undo()
        populated_db.add_action(1, "type")
        for _ in range(60):
            if attacher.watermark == 4:
                break
            await asyncio.sleep(0.05)
        assert attacher.watermark == 4
        assert {"type": "refresh", "maxId": 4} in drain(queue)
        await attacher.aclose()
