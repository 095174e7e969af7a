"""Keeps the debug view attached to whichever engine is reachable.

The attacher resolves the running engine's session directory, opens its
history database read-only, tracks the highest action id seen (the
watermark), and watches the directory for new activity. When the engine
goes away the attachment is dropped so stale history is never served;
when an engine (re)appears the attacher hands off to its directory.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path

from abpctl.engine.client import EngineClient
from abpctl.monitor.hub import LiveUpdateHub
from abpctl.monitor.models import AttachFailure, AttachResult
from abpctl.monitor.store import SessionStore, StoreUnavailable
from abpctl.monitor.watcher import ChangeWatcher

logger = logging.getLogger(__name__)


class SessionAttacher:
    """Owns the single live attachment (store + watcher + watermark).

    Reattachment is serialized by a lock: the previous store and watcher
    are fully closed before the next directory is opened. If the new
    directory turns out unusable, subscribers are told the session is gone.
    """

    def __init__(
        self,
        engine: EngineClient,
        hub: LiveUpdateHub,
        debounce: float = 0.2,
        watch_interval: float = 0.25,
    ) -> None:
        self._engine = engine
        self._hub = hub
        self._debounce = debounce
        self._watch_interval = watch_interval
        self._lock = asyncio.Lock()
        self._reconcile_lock = asyncio.Lock()
        self._store: SessionStore | None = None
        self._watcher: ChangeWatcher | None = None
        self._session_dir: str | None = None
        self._session_id: int | str | None = None
        self._watermark = 0
        self._last_reachable = False

    @property
    def store(self) -> SessionStore | None:
        return self._store

    @property
    def session_dir(self) -> str | None:
        return self._session_dir

    @property
    def session_id(self) -> int | str | None:
        return self._session_id

    @property
    def watermark(self) -> int:
        return self._watermark

    @property
    def is_attached(self) -> bool:
        return self._store is not None

    async def attach(self) -> AttachResult:
        """Attach to the session directory of the engine at the configured URL.

        Soft-fails with ``NOT_ATTACHED`` when the engine is unreachable or
        reports no directory, and with ``NO_ACTIVE_SESSION`` when the
        directory has no recorded session yet.
        """
        location = await self._engine.session_location()
        if location is None:
            return AttachResult(
                attached=False,
                reason=AttachFailure.NOT_ATTACHED,
                detail="Could not reach ABP or get session data",
            )

        session_dir = str(Path(location.session_dir).resolve())
        async with self._lock:
            if self._store is not None and session_dir == self._session_dir:
                return self._attached_result()
            return await self._open(session_dir)

    async def attach_until(self, timeout: float = 5.0, interval: float = 0.5) -> AttachResult:
        """Retry :meth:`attach` until it succeeds or ``timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = await self.attach()
            if result.attached or loop.time() + interval > deadline:
                return result
            await asyncio.sleep(interval)

    async def detach(self) -> None:
        """Drop the attachment and tell subscribers the session is gone."""
        async with self._lock:
            await self._close()
        self._hub.publish({"type": "session_changed", "session_dir": ""})

    async def check_status(self) -> bool:
        """Probe the engine and reconcile the attachment with the result."""
        reachable = await self._engine.is_ready()
        await self.reconcile(reachable)
        return reachable

    async def reconcile(self, reachable: bool) -> None:
        """Apply one reachability observation.

        Reattach on an unreachable -> reachable transition, or whenever
        the engine is reachable but nothing is open. Detach on a
        reachable -> unreachable transition. Overlapping observations are
        applied one at a time so a transition is acted on once.
        """
        async with self._reconcile_lock:
            if reachable and (not self._last_reachable or self._store is None):
                result = await self.attach()
                if not result.attached:
                    logger.debug("Attach deferred: %s", result.reason)
            elif not reachable and self._last_reachable:
                logger.info("ABP went offline, closing %s", self._session_dir)
                await self.detach()
            self._last_reachable = reachable

    def advance_watermark(self, max_id: int) -> bool:
        """Raise the watermark to ``max_id`` if it is strictly higher.

        Returns True (and notifies subscribers) only when the watermark
        moved, so late or reordered rechecks can never lower it.
        """
        if max_id <= self._watermark:
            return False
        self._watermark = max_id
        self._hub.publish({"type": "refresh", "maxId": max_id})
        return True

    async def aclose(self) -> None:
        async with self._lock:
            await self._close()

    async def _open(self, session_dir: str) -> AttachResult:
        previous = self._session_dir
        await self._close()
        result = await self._open_store(session_dir)
        if not result.attached and previous is not None:
            logger.info("Hand-off to %s failed, detached from %s", session_dir, previous)
            self._hub.publish({"type": "session_changed", "session_dir": ""})
        return result

    async def _open_store(self, session_dir: str) -> AttachResult:
        try:
            store = await asyncio.to_thread(SessionStore.open, session_dir)
        except StoreUnavailable as e:
            return AttachResult(
                attached=False, reason=AttachFailure.NOT_ATTACHED, detail=str(e)
            )

        try:
            session = await asyncio.to_thread(store.latest_session)
            watermark = (
                await asyncio.to_thread(store.max_action_id, session.id) if session else 0
            )
        except sqlite3.Error as e:
            store.close()
            return AttachResult(
                attached=False, reason=AttachFailure.NOT_ATTACHED, detail=str(e)
            )
        if session is None:
            store.close()
            return AttachResult(
                attached=False,
                session_dir=session_dir,
                reason=AttachFailure.NO_ACTIVE_SESSION,
                detail="No session recorded yet",
            )

        watcher = ChangeWatcher(
            session_dir,
            self._recheck,
            debounce=self._debounce,
            poll_interval=self._watch_interval,
        )
        await watcher.start()

        self._store = store
        self._watcher = watcher
        self._session_dir = session_dir
        self._session_id = session.id
        self._watermark = watermark
        logger.info(
            "Attached to session %s in %s (max action id %d)",
            session.id, session_dir, watermark,
        )
        self._hub.publish({"type": "session_changed", "session_dir": session_dir})
        return self._attached_result()

    async def _close(self) -> None:
        watcher, store = self._watcher, self._store
        self._watcher = None
        self._store = None
        self._session_dir = None
        self._session_id = None
        self._watermark = 0
        if watcher is not None:
            await watcher.stop()
        if store is not None:
            store.close()

    async def _recheck(self) -> None:
        store, session_id = self._store, self._session_id
        if store is None or session_id is None:
            return
        try:
            max_id = await asyncio.to_thread(store.max_action_id, session_id)
        except sqlite3.Error as e:
            # The engine may hold a write lock; try again on the next change
            logger.debug("Recheck skipped: %s", e)
            return
        if store is not self._store:
            return
        self.advance_watermark(max_id)

    def _attached_result(self) -> AttachResult:
        return AttachResult(
            attached=True,
            session_dir=self._session_dir,
            session_id=str(self._session_id),
        )
