"""Debounced change detection over a session directory.

The watcher rescans the directory tree on a short interval and compares
``(mtime_ns, size)`` snapshots. Any difference (new screenshot, database
or WAL write) schedules a single pending recheck; further changes inside
the debounce window push the recheck back instead of stacking timers.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Snapshot = dict[str, tuple[int, int]]


def scan_tree(root: Path) -> Snapshot:
    """Map every file under ``root`` to its ``(mtime_ns, size)``."""
    snapshot: Snapshot = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = os.path.join(dirpath, name)
            try:
                st = os.stat(full)
            except OSError:
                # Removed between listing and stat
                continue
            snapshot[full] = (st.st_mtime_ns, st.st_size)
    return snapshot


class ChangeWatcher:
    """Recursive, debounced watch over one directory.

    ``on_change`` is awaited once per burst of changes, after
    ``debounce`` seconds without further changes.
    """

    def __init__(
        self,
        path: Path | str,
        on_change: Callable[[], Awaitable[None]],
        debounce: float = 0.2,
        poll_interval: float = 0.25,
    ) -> None:
        self._path = Path(path)
        self._on_change = on_change
        self._debounce = debounce
        self._poll_interval = poll_interval
        self._snapshot: Snapshot = {}
        self._poll_task: asyncio.Task[None] | None = None
        self._pending: asyncio.TimerHandle | None = None
        self._callbacks: set[asyncio.Task[None]] = set()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def has_pending_recheck(self) -> bool:
        return self._pending is not None

    async def start(self) -> None:
        if self.is_running:
            return
        self._snapshot = await asyncio.to_thread(scan_tree, self._path)
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.debug("Watching %s (%d files)", self._path, len(self._snapshot))

    async def stop(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        tasks = list(self._callbacks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug("Stopped watching %s", self._path)

    def signal_change(self) -> None:
        """Record a change and (re)arm the debounce timer."""
        if self._pending is not None:
            self._pending.cancel()
        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(self._debounce, self._fire)

    def _fire(self) -> None:
        self._pending = None
        task = asyncio.create_task(self._run_callback())
        self._callbacks.add(task)
        task.add_done_callback(self._callbacks.discard)

    async def _run_callback(self) -> None:
        try:
            await self._on_change()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Change callback failed for %s", self._path)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                snapshot = await asyncio.to_thread(scan_tree, self._path)
            except OSError as e:
                logger.debug("Scan of %s failed: %s", self._path, e)
                continue
            if snapshot != self._snapshot:
                self._snapshot = snapshot
                self.signal_change()
