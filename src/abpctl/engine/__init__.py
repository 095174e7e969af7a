"""Engine control module for abpctl.

Talks to a running ABP engine over HTTP and supervises a locally
spawned engine process.

Public API:
    EngineClient -- Readiness probe, session lookup, shutdown request
    ProcessSupervisor -- Start/stop/restart of the engine child process
    LaunchConfig -- Parameters for one engine launch
    SupervisorError -- Base class of the supervision error taxonomy
"""

from abpctl.engine.client import EngineClient, SessionLocation
from abpctl.engine.supervisor import (
    AlreadyRunning,
    BinaryNotFound,
    EngineState,
    ExternallyRunning,
    LaunchConfig,
    LaunchFailed,
    LaunchTimeout,
    ProcessSupervisor,
    SupervisorError,
)

__all__ = [
    "AlreadyRunning",
    "BinaryNotFound",
    "EngineClient",
    "EngineState",
    "ExternallyRunning",
    "LaunchConfig",
    "LaunchFailed",
    "LaunchTimeout",
    "ProcessSupervisor",
    "SessionLocation",
    "SupervisorError",
]
