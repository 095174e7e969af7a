"""Live session monitoring for abpctl.

Mirrors the engine's on-disk session history (read-only) and pushes
change notifications to connected debug clients.

Public API:
    LiveUpdateHub -- Fan-out broadcaster for live update events
    SessionStore -- Read-only accessor over the history database
    ChangeWatcher -- Debounced recursive directory watch
    SessionAttacher -- Keeps the attachment in sync with the engine
"""

from abpctl.monitor.hub import LiveUpdateHub
from abpctl.monitor.models import Action, AttachFailure, AttachResult, Event, Session
from abpctl.monitor.store import SessionStore, StoreUnavailable
from abpctl.monitor.watcher import ChangeWatcher
from abpctl.monitor.attacher import SessionAttacher

__all__ = [
    "Action",
    "AttachFailure",
    "AttachResult",
    "ChangeWatcher",
    "Event",
    "LiveUpdateHub",
    "Session",
    "SessionAttacher",
    "SessionStore",
    "StoreUnavailable",
]
