"""Supervision of a locally spawned ABP engine process.

The supervisor owns at most one child process. It launches the engine
with a deterministic argument set, waits for the readiness probe, and
tears the process down gracefully (HTTP shutdown, then SIGTERM, then
SIGKILL). Exit of the child is observed by a background task so that a
crashed engine is reflected immediately in ``state`` and ``is_managed``.

State machine::

    IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE
                 \\-> FAILED (startable again, like IDLE)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import httpx
from pydantic import BaseModel, Field

from abpctl.engine.client import EngineClient
from abpctl.monitor.hub import LiveUpdateHub

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8222

# Diagnostic text returned with a failed launch
MAX_DIAGNOSTIC_CHARS = 200
# Bytes of stderr kept per process; the rest is read and discarded
STDERR_BUFFER_LIMIT = 64 * 1024


class EngineState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class SupervisorError(Exception):
    """Base class for engine supervision failures."""

    code = "supervisor_error"


class AlreadyRunning(SupervisorError):
    """A supervised process is live, or a start/stop is in flight."""

    code = "already_running"


class ExternallyRunning(SupervisorError):
    """An engine not spawned by this supervisor answers at the target port."""

    code = "externally_running"


class BinaryNotFound(SupervisorError):
    code = "binary_not_found"


class LaunchFailed(SupervisorError):
    """The process could not be spawned or exited before becoming ready."""

    code = "launch_failed"


class LaunchTimeout(SupervisorError):
    code = "launch_timeout"


class LaunchConfig(BaseModel):
    """Parameters for a single engine launch."""

    session_dir: Path | None = None
    executable_path: str | None = None
    window_width: int = Field(default=1280, gt=0)
    window_height: int = Field(default=800, gt=0)
    headless: bool = False
    extra_args: list[str] = Field(default_factory=list)


def normalize_extra_args(args: list[str]) -> list[str]:
    """Rewrite the legacy bare ``--headless`` flag; old headless is unsupported."""
    return ["--headless=new" if a == "--headless" else a for a in args]


def build_launch_args(port: int, config: LaunchConfig) -> list[str]:
    """Build the engine command-line arguments for ``config``."""
    args = [f"--abp-port={port}"]
    if config.session_dir is not None:
        args.append(f"--abp-session-dir={config.session_dir}")
    args += [
        "--no-first-run",
        "--no-default-browser-check",
        f"--abp-window-size={config.window_width},{config.window_height}",
    ]
    if config.headless:
        args.append("--headless=new")
    args.extend(normalize_extra_args(config.extra_args))
    return args


@dataclass
class SupervisedProcess:
    """A spawned engine process and the tasks that observe it."""

    process: asyncio.subprocess.Process
    exit_task: asyncio.Task[int]
    stderr: bytearray = field(default_factory=bytearray)
    stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    def diagnostic(self, limit: int = MAX_DIAGNOSTIC_CHARS) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()[:limit]


class ProcessSupervisor:
    """Spawns, health-checks, and terminates the engine child process.

    Example usage::

        supervisor = ProcessSupervisor(EngineClient("http://127.0.0.1:8222"))
        await supervisor.start(LaunchConfig(session_dir=Path("sessions/x"),
                                            executable_path="/opt/abp/abp"))
        ...
        await supervisor.stop()
    """

    def __init__(
        self,
        engine: EngineClient,
        hub: LiveUpdateHub | None = None,
        ready_timeout: float = 15.0,
        poll_interval: float = 0.3,
        stop_timeout: float = 5.0,
        restart_settle: float = 1.0,
        shutdown_timeout_ms: int = 5000,
    ) -> None:
        self._engine = engine
        self._hub = hub
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval
        self._stop_timeout = stop_timeout
        self._restart_settle = restart_settle
        self._shutdown_timeout_ms = shutdown_timeout_ms
        self._port = httpx.URL(engine.base_url).port or DEFAULT_PORT
        self._state = EngineState.IDLE
        self._child: SupervisedProcess | None = None
        self._last_error: str | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_managed(self) -> bool:
        """Whether a locally spawned engine process is currently alive."""
        return self._child is not None and self._child.alive

    @property
    def pid(self) -> int | None:
        return self._child.pid if self.is_managed else None

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def start(self, config: LaunchConfig) -> None:
        """Launch the engine and wait until it reports ready.

        Raises:
            AlreadyRunning: A supervised process is live or a transition
                is in flight.
            ExternallyRunning: A foreign engine already answers healthy.
            BinaryNotFound: No executable at ``config.executable_path``.
            LaunchFailed: The process failed to spawn or exited early.
            LaunchTimeout: The readiness ceiling elapsed.
        """
        if self.is_managed or self._state in (EngineState.STARTING, EngineState.STOPPING):
            raise AlreadyRunning("ABP process already running")

        self._state = EngineState.STARTING
        self._last_error = None
        try:
            await self._launch(config)
        except SupervisorError as e:
            self._state = EngineState.FAILED
            self._last_error = str(e)
            logger.warning("Engine start failed: %s", e)
            raise
        except BaseException:
            self._state = EngineState.IDLE
            raise

        self._state = EngineState.RUNNING
        logger.info("ABP ready on port %d (pid=%s)", self._port, self.pid)
        self._publish_status(True)

    async def stop(self) -> None:
        """Shut the engine down and clear the local process handle.

        The HTTP shutdown request is best-effort; a supervised process
        that is still alive afterwards gets SIGTERM and, after
        ``stop_timeout`` seconds, SIGKILL. Subscribers are always told
        the engine is offline, even if nothing was supervised.
        """
        self._state = EngineState.STOPPING
        try:
            try:
                await self._engine.shutdown(timeout_ms=self._shutdown_timeout_ms)
            except httpx.HTTPError as e:
                logger.debug("Graceful shutdown request failed: %s", e)

            child = self._child
            if child is not None and child.alive:
                await self._terminate(child)
            self._child = None
        finally:
            self._state = EngineState.IDLE
            self._publish_status(False)
        logger.info("ABP stopped")

    async def restart(self, config: LaunchConfig) -> None:
        """Stop, let the port settle, then start with ``config``."""
        await self.stop()
        await asyncio.sleep(self._restart_settle)
        await self.start(config)

    async def _launch(self, config: LaunchConfig) -> None:
        if await self._engine.is_ready():
            raise ExternallyRunning(f"ABP is already running at {self._engine.base_url}")

        binary = config.executable_path
        if not binary:
            raise BinaryNotFound(
                "ABP binary not found. Set --abp-binary, ABP_BROWSER_PATH, "
                "or executable_path in the launch config."
            )
        if not Path(binary).exists():
            raise BinaryNotFound(f"ABP binary not found at: {binary}")

        if config.session_dir is not None:
            Path(config.session_dir).mkdir(parents=True, exist_ok=True)

        args = build_launch_args(self._port, config)
        logger.info("Starting ABP: %s", binary)
        logger.info("  Args: %s", " ".join(args))

        # stdout is never read: the stdio bridge owns our own stdout framing
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LaunchFailed(f"Failed to spawn ABP: {e}") from e

        exit_task = asyncio.create_task(self._watch_exit(proc))
        child = SupervisedProcess(process=proc, exit_task=exit_task)
        child.stderr_task = asyncio.create_task(self._drain_stderr(child))
        self._child = child

        try:
            await self._wait_until_ready(child)
        except BaseException:
            if child.alive:
                await self._terminate(child, force=True)
            raise

    async def _wait_until_ready(self, child: SupervisedProcess) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._ready_timeout

        while loop.time() < deadline:
            if child.exit_task.done():
                await self._settle_stderr(child)
                raise LaunchFailed(
                    "ABP process exited immediately" + _hint(child.diagnostic())
                )
            if await self._engine.is_ready():
                return
            remaining = deadline - loop.time()
            await asyncio.wait(
                {child.exit_task}, timeout=max(0.0, min(self._poll_interval, remaining))
            )

        await self._terminate(child, force=True)
        raise LaunchTimeout(
            f"ABP failed to start within {self._ready_timeout:g} seconds"
            + _hint(child.diagnostic())
        )

    async def _terminate(self, child: SupervisedProcess, force: bool = False) -> None:
        proc = child.process
        if proc.returncode is None:
            try:
                if force:
                    proc.kill()
                else:
                    proc.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(asyncio.shield(child.exit_task), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "ABP (pid=%d) did not exit within %gs, killing", proc.pid, self._stop_timeout
            )
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await child.exit_task

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> int:
        code = await proc.wait()
        if self._child is not None and self._child.process is proc:
            logger.info("ABP process exited with code %s", code)
            self._child = None
            if self._state is EngineState.RUNNING:
                # Exit outside stop(): the engine crashed or was killed
                self._state = EngineState.IDLE
                self._last_error = f"ABP process exited with code {code}"
                self._publish_status(False)
        return code

    async def _drain_stderr(self, child: SupervisedProcess) -> None:
        stream = child.process.stderr
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            room = STDERR_BUFFER_LIMIT - len(child.stderr)
            if room > 0:
                child.stderr.extend(chunk[:room])

    async def _settle_stderr(self, child: SupervisedProcess) -> None:
        """Give the stderr reader a moment to collect the final output."""
        if child.stderr_task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(child.stderr_task), timeout=0.5)
        except asyncio.TimeoutError:
            pass

    def _publish_status(self, running: bool) -> None:
        if self._hub is not None:
            self._hub.publish({"type": "abp_status", "running": running})


def _hint(text: str) -> str:
    return f": {text}" if text else ""
