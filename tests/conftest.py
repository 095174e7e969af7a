"""Shared test fixtures for the abpctl test suite.

Provides a fake engine (HTTP side via httpx.MockTransport, process side
via small executable Python scripts), a real on-disk history database,
and Pillow-generated images.
"""

from __future__ import annotations

import base64
import io
import json
import sqlite3
import stat
import sys
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest
from PIL import Image

from abpctl.engine.client import EngineClient
from abpctl.monitor.hub import LiveUpdateHub


# ---------------------------------------------------------------------------
# Fake engine (HTTP)
# ---------------------------------------------------------------------------


class FakeEngine:
    """In-memory stand-in for the engine's HTTP API.

    ``ready_after`` flips the engine to ready once that many status
    probes have been answered as "down".
    """

    def __init__(self) -> None:
        self.ready = False
        self.ready_after: int | None = None
        self.session_dir: str | None = None
        self.shutdown_fails = False
        self.status_calls = 0
        self.shutdown_calls = 0
        self.mcp_requests: list[httpx.Request] = []
        self.mcp_handler: Callable[[httpx.Request], httpx.Response] | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/browser/status":
            self.status_calls += 1
            if self.ready_after is not None and self.status_calls > self.ready_after:
                self.ready = True
            if not self.ready:
                raise httpx.ConnectError("Connection refused", request=request)
            return httpx.Response(200, json={"success": True, "data": {"ready": True}})

        if path == "/api/v1/browser/session-data":
            if not self.ready:
                raise httpx.ConnectError("Connection refused", request=request)
            data: dict[str, Any] = {}
            if self.session_dir:
                data = {
                    "session_dir": self.session_dir,
                    "database_path": str(Path(self.session_dir) / "history.db"),
                    "screenshots_dir": str(Path(self.session_dir) / "screenshots"),
                }
            return httpx.Response(200, json={"success": True, "data": data})

        if path == "/api/v1/browser/shutdown":
            self.shutdown_calls += 1
            if self.shutdown_fails:
                raise httpx.ConnectError("Connection refused", request=request)
            self.ready = False
            return httpx.Response(200, json={"success": True})

        if path == "/mcp":
            self.mcp_requests.append(request)
            if self.mcp_handler is None:
                return httpx.Response(202)
            return self.mcp_handler(request)

        return httpx.Response(404, json={"success": False, "error": "not found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> EngineClient:
        return EngineClient(
            "http://127.0.0.1:8222",
            status_timeout=0.5,
            session_data_timeout=0.5,
            shutdown_timeout=0.5,
            transport=self.transport,
        )


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def hub() -> LiveUpdateHub:
    return LiveUpdateHub()


def drain_events(queue) -> list[dict[str, Any]]:
    """Pop every queued hub event without waiting."""
    events = []
    while not queue.empty():
        events.append(json.loads(queue.get_nowait()))
    return events


# ---------------------------------------------------------------------------
# Fake engine (process)
# ---------------------------------------------------------------------------


def _write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def sleeping_engine(tmp_path: Path) -> Path:
    """An executable that ignores its arguments and runs until signalled."""
    return _write_script(tmp_path / "abp-sleep", "import time\ntime.sleep(60)\n")


@pytest.fixture
def crashing_engine(tmp_path: Path) -> Path:
    """An executable that writes a diagnostic to stderr and exits 3."""
    return _write_script(
        tmp_path / "abp-crash",
        "import sys\nsys.stderr.write('boom: missing libabp.so\\n')\nsys.exit(3)\n",
    )


@pytest.fixture
def stubborn_engine(tmp_path: Path) -> Path:
    """An executable that ignores SIGTERM.

    It touches ``<name>.armed`` beside itself once the signal is ignored.
    """
    return _write_script(
        tmp_path / "abp-stubborn",
        "import signal, time\n"
        "from pathlib import Path\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "Path(__file__).with_name('abp-stubborn.armed').touch()\n"
        "time.sleep(60)\n",
    )


# ---------------------------------------------------------------------------
# History database
# ---------------------------------------------------------------------------


_SCHEMA = """
CREATE TABLE sessions (
    id INTEGER PRIMARY KEY,
    start_time TEXT,
    end_time TEXT,
    browser_version TEXT,
    user_agent TEXT
);
CREATE TABLE actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER,
    tab_id TEXT,
    action_type TEXT,
    timestamp TEXT,
    duration_ms REAL,
    params TEXT,
    result TEXT,
    success INTEGER,
    error_message TEXT,
    screenshot_before_path TEXT,
    screenshot_after_path TEXT
);
CREATE TABLE events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action_id INTEGER,
    event_type TEXT,
    data TEXT
);
"""


class HistoryDB:
    """Writer side of a session directory, as the engine would produce it."""

    def __init__(self, session_dir: Path) -> None:
        self.session_dir = session_dir
        self.path = session_dir / "history.db"
        self.screenshots = session_dir / "screenshots"
        self.screenshots.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.path) as conn:
            conn.executescript(_SCHEMA)

    def add_session(self, session_id: int = 1, start_time: str = "2025-01-01T12:00:00") -> int:
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                "INSERT INTO sessions (id, start_time, browser_version, user_agent) "
                "VALUES (?, ?, ?, ?)",
                (session_id, start_time, "ABP/1.0", "Mozilla/5.0"),
            )
        return session_id

    def add_action(self, session_id: int = 1, action_type: str = "click", **fields: Any) -> int:
        row = {
            "session_id": session_id,
            "action_type": action_type,
            "timestamp": "2025-01-01T12:00:01",
            "duration_ms": 12.5,
            "params": json.dumps({"x": 10, "y": 20}),
            "success": 1,
            **fields,
        }
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        with sqlite3.connect(self.path) as conn:
            cur = conn.execute(f"INSERT INTO actions ({cols}) VALUES ({marks})", tuple(row.values()))
            return int(cur.lastrowid)

    def add_event(self, action_id: int, event_type: str = "navigation", data: str = "{}") -> int:
        with sqlite3.connect(self.path) as conn:
            cur = conn.execute(
                "INSERT INTO events (action_id, event_type, data) VALUES (?, ?, ?)",
                (action_id, event_type, data),
            )
            return int(cur.lastrowid)


@pytest.fixture
def history_db(tmp_path: Path) -> HistoryDB:
    """An empty history database (schema only) in a fresh session dir."""
    return HistoryDB(tmp_path / "sessions" / "20250101120000")


@pytest.fixture
def populated_db(history_db: HistoryDB) -> HistoryDB:
    """A history database with one session and two actions."""
    history_db.add_session(1)
    first = history_db.add_action(1, "navigate", params=json.dumps({"url": "https://example.com"}))
    history_db.add_action(1, "click")
    history_db.add_event(first, "navigation", json.dumps({"url": "https://example.com"}))
    return history_db


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def make_image_b64(width: int, height: int, fmt: str = "PNG") -> str:
    """Base64 of a solid-color image in the given Pillow format."""
    image = Image.new("RGB", (width, height), color=(40, 120, 200))
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def image_size_b64(data: str) -> tuple[int, int]:
    with Image.open(io.BytesIO(base64.b64decode(data))) as image:
        return image.size


@pytest.fixture
def make_image() -> Callable[..., str]:
    return make_image_b64


@pytest.fixture
def image_size() -> Callable[[str], tuple[int, int]]:
    return image_size_b64


@pytest.fixture
def drain() -> Callable[[Any], list[dict[str, Any]]]:
    return drain_events


@pytest.fixture
def make_history_db(tmp_path: Path) -> Callable[[str], HistoryDB]:
    """Factory for additional session directories under ``tmp_path``."""
    return lambda name: HistoryDB(tmp_path / "sessions" / name)
