"""Domain models for the session history mirrored by the debug server."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Session(BaseModel):
    """One engine run. The engine records exactly one active session per run."""

    model_config = ConfigDict(extra="allow")

    id: int | str
    start_time: Any = None
    end_time: Any = None
    browser_version: str | None = None
    user_agent: str | None = None


class Action(BaseModel):
    """A single recorded browser action. Append-only."""

    model_config = ConfigDict(extra="allow")

    id: int
    session_id: int | str
    tab_id: int | str | None = None
    action_type: str
    timestamp: Any = None
    duration_ms: float | None = None
    params: Any = None
    result: Any = None
    success: bool | None = None
    error_message: str | None = None
    screenshot_before_path: str | None = None
    screenshot_after_path: str | None = None


class Event(BaseModel):
    """An event emitted while an action ran. Column names beyond ``id`` are
    whatever the engine's schema provides."""

    model_config = ConfigDict(extra="allow")

    id: int | str


class AttachFailure(str, Enum):
    NOT_ATTACHED = "not_attached"
    NO_ACTIVE_SESSION = "no_active_session"


class AttachResult(BaseModel):
    attached: bool
    session_dir: str | None = None
    session_id: str | None = None
    reason: AttachFailure | None = None
    detail: str = Field(default="")
