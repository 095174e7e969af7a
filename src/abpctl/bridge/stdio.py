"""stdin/stdout MCP bridge to the engine's HTTP MCP endpoint.

Reads newline-delimited JSON-RPC messages from stdin, makes sure an
engine is running when the client sends ``initialize``, forwards every
message to ``POST /mcp`` (replaying the ``Mcp-Session-Id`` the engine
issued), shrinks oversized results, and writes responses to stdout one
per line. Logging goes to stderr only.

Lines are read in order but handled concurrently, so a slow tool call
does not hold up later messages; responses may be written out of order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from typing import Any, BinaryIO, TextIO

import httpx

from abpctl.bridge.transform import ResponseTransformer
from abpctl.config.settings import Settings
from abpctl.engine.client import EngineClient
from abpctl.engine.paths import find_engine_binary
from abpctl.engine.supervisor import (
    ExternallyRunning,
    LaunchConfig,
    ProcessSupervisor,
    SupervisorError,
)

logger = logging.getLogger(__name__)

JSONRPC_SERVER_ERROR = -32000
SESSION_HEADER = "Mcp-Session-Id"
MCP_PATH = "/mcp"

# WXGA: 1,024,000 pixels, inside the 1.15MP / 1568px screenshot budget
BRIDGE_WINDOW_WIDTH = 1280
BRIDGE_WINDOW_HEIGHT = 800

# asyncio's default 64 KiB line limit is too small for tool calls
STDIN_LINE_LIMIT = 32 * 1024 * 1024
FILE_READ_CHUNK = 64 * 1024

_feeders: set[asyncio.Task[None]] = set()


class ForwardError(Exception):
    """Raised when a message cannot be delivered to the engine."""


class ProtocolBridge:
    """Bridges one line-delimited JSON-RPC stream to the engine over HTTP."""

    def __init__(
        self,
        engine: EngineClient,
        supervisor: ProcessSupervisor,
        launch_config: LaunchConfig,
        transformer: ResponseTransformer | None = None,
        output: TextIO | None = None,
        request_timeout: float = 60.0,
        drain_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._engine = engine
        self._supervisor = supervisor
        self._launch_config = launch_config
        self._transformer = transformer or ResponseTransformer()
        self._output = output if output is not None else sys.stdout
        self._request_timeout = request_timeout
        self._drain_timeout = drain_timeout
        self._client = httpx.AsyncClient(base_url=engine.base_url, transport=transport)
        self._session_id: str | None = None
        self._launching: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._stop = asyncio.Event()

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def request_stop(self) -> None:
        """Ask :meth:`run` to stop reading and shut down."""
        self._stop.set()

    async def run(self, reader: asyncio.StreamReader) -> None:
        """Process ``reader`` until EOF or :meth:`request_stop`, then shut down."""
        stop_wait = asyncio.create_task(self._stop.wait())
        try:
            while True:
                read = asyncio.create_task(reader.readline())
                done, _ = await asyncio.wait(
                    {read, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if read not in done:
                    read.cancel()
                    logger.info("Stop requested")
                    break
                try:
                    raw = read.result()
                except (ValueError, asyncio.LimitOverrunError) as e:
                    # Oversized line: the reader has discarded it already
                    logger.error("Dropped input line: %s", e)
                    continue
                if not raw:
                    logger.info("Input closed")
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    self.dispatch(line)
        finally:
            stop_wait.cancel()
            await self.shutdown()

    def dispatch(self, line: str) -> asyncio.Task[None]:
        """Handle ``line`` in the background, tracking it until it finishes."""
        task = asyncio.create_task(self.handle_message(line))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def handle_message(self, line: str) -> None:
        try:
            message = json.loads(line)
        except ValueError:
            logger.warning("Invalid JSON: %s", line[:100])
            return

        is_request = isinstance(message, dict) and "id" in message
        request_id = message.get("id") if is_request else None
        method = message.get("method", "") if isinstance(message, dict) else ""

        if method == "initialize":
            try:
                await self.ensure_engine()
            except SupervisorError as e:
                logger.error("Failed to launch ABP: %s", e)
                if is_request:
                    self._send_error(request_id, f"Failed to launch ABP: {e}")
                return

        try:
            resp = await self.forward(line)
            if resp.status_code == 202 or not resp.content.strip():
                return
            payloads = _decode_body(resp)
            for payload in payloads:
                transformed = await asyncio.to_thread(self._transformer.transform, payload)
                self._write(transformed)
        except (ForwardError, ValueError) as e:
            if is_request:
                self._send_error(request_id, f"Proxy error: {e}")
            else:
                logger.warning("Error forwarding notification: %s", e)

    async def ensure_engine(self) -> None:
        """Make sure an engine answers at the target port.

        Reuses an engine that is already healthy; otherwise launches one.
        Concurrent callers share a single in-flight launch.
        """
        if self._supervisor.is_managed:
            return
        if self._launching is None:
            self._launching = asyncio.create_task(self._start_engine())
        await asyncio.shield(self._launching)

    async def forward(self, line: str) -> httpx.Response:
        """POST ``line`` to the engine's MCP endpoint.

        Raises:
            ForwardError: On connection failure, timeout or a non-2xx status.
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        try:
            resp = await self._client.post(
                MCP_PATH,
                content=line.encode("utf-8"),
                headers=headers,
                timeout=self._request_timeout,
            )
        except httpx.TimeoutException as e:
            raise ForwardError("MCP request timed out") from e
        except httpx.HTTPError as e:
            raise ForwardError(str(e) or type(e).__name__) from e

        session_id = resp.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id
        if not resp.is_success:
            raise ForwardError(f"MCP endpoint returned HTTP {resp.status_code}")
        return resp

    async def shutdown(self) -> None:
        """Finish in-flight messages (bounded), then stop any engine we own."""
        if self._inflight:
            _, pending = await asyncio.wait(set(self._inflight), timeout=self._drain_timeout)
            for task in pending:
                task.cancel()
        if self._launching is not None:
            self._launching.cancel()
            try:
                await self._launching
            except (asyncio.CancelledError, SupervisorError):
                pass
        if self._supervisor.is_managed:
            logger.info("Shutting down ABP...")
            await self._supervisor.stop()
        await self._client.aclose()
        await self._engine.aclose()

    async def _start_engine(self) -> None:
        port = self._supervisor.port
        try:
            if await self._engine.is_ready():
                logger.info("Connected to existing ABP on port %d", port)
                return
            logger.info("Launching ABP on port %d...", port)
            try:
                await self._supervisor.start(self._launch_config)
            except ExternallyRunning:
                logger.info("ABP came up on port %d while launching, reusing it", port)
                return
            logger.info("ABP ready on port %d", port)
        finally:
            self._launching = None

    def _send_error(self, request_id: Any, message: str) -> None:
        self._write(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": JSONRPC_SERVER_ERROR, "message": message},
            }
        )

    def _write(self, payload: Any) -> None:
        self._output.write(json.dumps(payload, separators=(",", ":")) + "\n")
        self._output.flush()


def _decode_body(resp: httpx.Response) -> list[Any]:
    """Parse a JSON body, or every ``data:`` payload of an event-stream body."""
    content_type = resp.headers.get("content-type", "")
    if "text/event-stream" not in content_type:
        return [json.loads(resp.text)]

    payloads = []
    data_lines: list[str] = []
    for line in resp.text.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line and data_lines:
            payloads.append(json.loads("\n".join(data_lines)))
            data_lines = []
    return payloads


def build_bridge_launch_config(settings: Settings, headless: bool = False) -> LaunchConfig:
    engine = settings.engine
    return LaunchConfig(
        session_dir=engine.session_dir,
        executable_path=find_engine_binary(engine.binary) or engine.binary,
        window_width=BRIDGE_WINDOW_WIDTH,
        window_height=BRIDGE_WINDOW_HEIGHT,
        headless=headless or engine.headless,
        extra_args=[
            f"--window-size={BRIDGE_WINDOW_WIDTH},{BRIDGE_WINDOW_HEIGHT}",
            *engine.extra_args,
        ],
    )


async def feed_from_file(reader: asyncio.StreamReader, stream: BinaryIO) -> None:
    """Copy ``stream`` into ``reader`` from a worker thread, then signal EOF."""
    try:
        while True:
            chunk = await asyncio.to_thread(stream.read, FILE_READ_CHUNK)
            if not chunk:
                break
            reader.feed_data(chunk)
    finally:
        reader.feed_eof()


async def open_stdin(limit: int = STDIN_LINE_LIMIT) -> asyncio.StreamReader:
    """Wrap the process's stdin in an asyncio StreamReader.

    Pipes and terminals are read by the event loop directly. A regular
    file (``abpctl bridge < messages.jsonl``) cannot be registered with
    the loop, so it is read in a worker thread instead.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    try:
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    except ValueError:
        logger.debug("stdin is not a pipe, reading it in a thread")
        task = asyncio.create_task(feed_from_file(reader, sys.stdin.buffer))
        _feeders.add(task)
        task.add_done_callback(_feeders.discard)
    return reader


async def serve_stdio(settings: Settings, headless: bool = False) -> None:
    """Run the bridge on this process's stdin/stdout until EOF or a signal."""
    engine = EngineClient(
        settings.engine.base_url,
        status_timeout=settings.engine.status_timeout,
        session_data_timeout=settings.engine.session_data_timeout,
        shutdown_timeout=settings.engine.shutdown_timeout,
    )
    supervisor = ProcessSupervisor(
        engine,
        ready_timeout=settings.engine.ready_timeout,
        poll_interval=settings.engine.poll_interval,
        stop_timeout=settings.engine.stop_timeout,
    )
    bridge = ProtocolBridge(
        engine,
        supervisor,
        build_bridge_launch_config(settings, headless=headless),
        transformer=ResponseTransformer(settings.transform),
        request_timeout=settings.engine.proxy_timeout,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bridge.request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support
            pass

    reader = await open_stdin()
    await bridge.run(reader)
