"""FastAPI debug server: engine control, session history, live updates.

Endpoints::

    GET  /                         -> debug UI (when ui_path is configured)
    GET  /events                   -> server-sent live update stream
    GET  /data/session             -> current session summary
    GET  /data/actions             -> actions of the session, newest first
    GET  /data/actions/{id}        -> one action
    GET  /data/actions/{id}/events -> events recorded for one action
    GET  /data/screenshots/{path}  -> screenshot file from the session dir
    GET  /control/status           -> reachability + supervisor state
    POST /control/attach           <- force an attach attempt
    POST /control/start            <- {"session_dir": ..., "headless": ...}
    POST /control/stop
    POST /control/restart          <- same body as start
    *    /api/v1/{path}            -> proxied to the engine unchanged
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from abpctl.config.settings import Settings, default_session_dir
from abpctl.engine.client import EngineClient
from abpctl.engine.paths import find_engine_binary
from abpctl.engine.supervisor import LaunchConfig, ProcessSupervisor, SupervisorError
from abpctl.monitor.attacher import SessionAttacher
from abpctl.monitor.hub import LiveUpdateHub
from abpctl.server.proxy import EngineProxy

logger = logging.getLogger(__name__)

# Seconds between SSE keepalive comments on an idle stream
KEEPALIVE_INTERVAL = 15.0

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class LaunchRequest(BaseModel):
    session_dir: str | None = Field(default=None, description="Session directory for the engine")
    executable_path: str | None = Field(default=None, description="Path to the ABP binary")
    window_width: int | None = Field(default=None, gt=0)
    window_height: int | None = Field(default=None, gt=0)
    headless: bool | None = None
    extra_args: list[str] | None = None


class StatusResponse(BaseModel):
    running: bool
    managed: bool
    state: str
    pid: int | None = None
    session_dir: str | None = None
    launch_session_dir: str
    abp_binary: str
    last_error: str | None = None


def create_app(
    settings: Settings | None = None,
    engine: EngineClient | None = None,
    supervisor: ProcessSupervisor | None = None,
    attacher: SessionAttacher | None = None,
    hub: LiveUpdateHub | None = None,
    proxy: EngineProxy | None = None,
    launch_session_dir: Path | str | None = None,
    abp_binary: str | None = None,
) -> FastAPI:
    """Create and configure the debug server application.

    Collaborators can be injected for testing; anything omitted is built
    from ``settings``. They live on ``app.state`` as single owned
    instances shared by all routes.
    """
    settings = settings or Settings()
    eng_cfg = settings.engine
    dbg_cfg = settings.debug

    hub = hub or LiveUpdateHub()
    engine = engine or EngineClient(
        eng_cfg.base_url,
        status_timeout=eng_cfg.status_timeout,
        session_data_timeout=eng_cfg.session_data_timeout,
        shutdown_timeout=eng_cfg.shutdown_timeout,
    )
    supervisor = supervisor or ProcessSupervisor(
        engine,
        hub=hub,
        ready_timeout=eng_cfg.ready_timeout,
        poll_interval=eng_cfg.poll_interval,
        stop_timeout=eng_cfg.stop_timeout,
        restart_settle=eng_cfg.restart_settle,
    )
    attacher = attacher or SessionAttacher(
        engine, hub, debounce=dbg_cfg.debounce, watch_interval=dbg_cfg.watch_interval
    )
    proxy = proxy or EngineProxy(engine.base_url, timeout=eng_cfg.proxy_timeout)
    if launch_session_dir is None:
        launch_session_dir = eng_cfg.session_dir or default_session_dir()
    launch_session_dir = Path(launch_session_dir).resolve()
    if abp_binary is None:
        abp_binary = find_engine_binary(eng_cfg.binary)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        result = await app.state.attacher.attach()
        if result.attached:
            logger.info("Attached to session dir %s", result.session_dir)
        else:
            logger.info("No running ABP found. Start ABP to connect.")
        yield
        task = app.state.attach_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if app.state.supervisor.is_managed:
            await app.state.supervisor.stop()
        await app.state.attacher.aclose()
        await app.state.proxy.aclose()
        await app.state.engine.aclose()
        logger.info("Debug server stopped")

    app = FastAPI(
        title="abpctl debug server",
        description="Control, history, and live updates for an ABP engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.hub = hub
    app.state.engine = engine
    app.state.supervisor = supervisor
    app.state.attacher = attacher
    app.state.proxy = proxy
    app.state.launch_session_dir = launch_session_dir
    app.state.abp_binary = abp_binary
    app.state.attach_task = None

    def _launch_config(body: LaunchRequest | None) -> LaunchConfig:
        body = body or LaunchRequest()
        return LaunchConfig(
            session_dir=Path(body.session_dir or app.state.launch_session_dir).resolve(),
            executable_path=body.executable_path or app.state.abp_binary or None,
            window_width=body.window_width or eng_cfg.window_width,
            window_height=body.window_height or eng_cfg.window_height,
            headless=eng_cfg.headless if body.headless is None else body.headless,
            extra_args=eng_cfg.extra_args if body.extra_args is None else body.extra_args,
        )

    def _schedule_attach() -> None:
        # Session data appears shortly after the engine reports ready
        previous = app.state.attach_task
        if previous is not None and not previous.done():
            previous.cancel()
        app.state.attach_task = asyncio.create_task(
            app.state.attacher.attach_until(
                dbg_cfg.attach_retry_window, dbg_cfg.attach_retry_interval
            )
        )

    def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
        return JSONResponse({"error": message, **extra}, status_code=status_code)

    # -------------------------------------------------------------------
    # UI and live updates
    # -------------------------------------------------------------------

    @app.get("/", response_model=None)
    async def index() -> Response:
        ui_path = dbg_cfg.ui_path
        if not ui_path or not Path(ui_path).is_file():
            return _error(404, "Debug UI not configured")
        return FileResponse(ui_path, media_type="text/html; charset=utf-8")

    @app.get("/events")
    async def events(request: Request) -> StreamingResponse:
        async def event_stream() -> AsyncIterator[str]:
            async with app.state.hub.subscription() as queue:
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        data = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_INTERVAL)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield f"data: {data}\n\n"

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # -------------------------------------------------------------------
    # Session history (read-only)
    # -------------------------------------------------------------------

    @app.get("/data/session")
    async def data_session() -> dict[str, Any]:
        att: SessionAttacher = app.state.attacher
        if att.store is None:
            await att.attach()
        store, session_id = att.store, att.session_id
        session = None
        action_count = 0
        if store is not None and session_id is not None:
            session = await asyncio.to_thread(store.latest_session)
            action_count = await asyncio.to_thread(store.max_action_id, session_id)
        return {
            "session": session.model_dump() if session else None,
            "session_dir": att.session_dir,
            "abp_url": app.state.engine.base_url,
            "action_count": action_count,
        }

    @app.get("/data/actions")
    async def data_actions() -> list[dict[str, Any]]:
        att: SessionAttacher = app.state.attacher
        store, session_id = att.store, att.session_id
        if store is None or session_id is None:
            return []
        actions = await asyncio.to_thread(store.list_actions, session_id)
        return [a.model_dump() for a in actions]

    @app.get("/data/actions/{action_id}", response_model=None)
    async def data_action(action_id: int) -> dict[str, Any] | JSONResponse:
        store = app.state.attacher.store
        if store is None:
            return _error(404, "No database")
        action = await asyncio.to_thread(store.get_action, action_id)
        if action is None:
            return _error(404, "Action not found")
        return action.model_dump()

    @app.get("/data/actions/{action_id}/events", response_model=None)
    async def data_action_events(action_id: int) -> list[dict[str, Any]] | JSONResponse:
        store = app.state.attacher.store
        if store is None:
            return _error(404, "No database")
        events = await asyncio.to_thread(store.list_events, action_id)
        return [e.model_dump() for e in events]

    @app.get("/data/screenshots/{filename:path}", response_model=None)
    async def data_screenshot(filename: str) -> Response:
        store = app.state.attacher.store
        if store is None:
            return _error(404, "No session attached")
        path = store.screenshot_path(filename)
        if path is None:
            return _error(403, "Forbidden")
        if not path.is_file():
            return _error(404, "Screenshot not found")
        return FileResponse(path, media_type="image/webp")

    # -------------------------------------------------------------------
    # Engine control
    # -------------------------------------------------------------------

    @app.get("/control/status")
    async def control_status() -> StatusResponse:
        att: SessionAttacher = app.state.attacher
        sup: ProcessSupervisor = app.state.supervisor
        running = await att.check_status()
        return StatusResponse(
            running=running,
            managed=sup.is_managed,
            state=sup.state.value,
            pid=sup.pid,
            session_dir=att.session_dir,
            launch_session_dir=str(app.state.launch_session_dir),
            abp_binary=app.state.abp_binary or "",
            last_error=sup.last_error,
        )

    @app.post("/control/attach", response_model=None)
    async def control_attach() -> dict[str, Any] | JSONResponse:
        result = await app.state.attacher.attach()
        if not result.attached:
            return JSONResponse(
                {"ok": False, "error": result.detail, "reason": result.reason.value},
                status_code=400,
            )
        return {"ok": True, "session_dir": result.session_dir}

    @app.post("/control/start", response_model=None)
    async def control_start(body: LaunchRequest | None = None) -> dict[str, Any] | JSONResponse:
        try:
            await app.state.supervisor.start(_launch_config(body))
        except SupervisorError as e:
            return JSONResponse({"ok": False, "error": str(e), "code": e.code}, status_code=400)
        _schedule_attach()
        return {"ok": True}

    @app.post("/control/stop")
    async def control_stop() -> dict[str, Any]:
        await app.state.supervisor.stop()
        return {"ok": True}

    @app.post("/control/restart", response_model=None)
    async def control_restart(body: LaunchRequest | None = None) -> dict[str, Any] | JSONResponse:
        try:
            await app.state.supervisor.restart(_launch_config(body))
        except SupervisorError as e:
            return JSONResponse({"ok": False, "error": str(e), "code": e.code}, status_code=400)
        _schedule_attach()
        return {"ok": True}

    # -------------------------------------------------------------------
    # Engine API passthrough
    # -------------------------------------------------------------------

    @app.api_route("/api/v1/{path:path}", methods=PROXY_METHODS, response_model=None)
    async def api_proxy(request: Request, path: str) -> Response:
        return await app.state.proxy.forward(request)

    return app


def main(settings: Settings | None = None, **kwargs: Any) -> None:
    """Run the debug server with uvicorn."""
    settings = settings or Settings()
    app = create_app(settings, **kwargs)
    logger.info("ABP debug server")
    logger.info("  UI:          http://%s:%d", settings.debug.host, settings.debug.port)
    logger.info("  ABP:         %s", settings.engine.base_url)
    logger.info("  Binary:      %s", app.state.abp_binary or "(not found)")
    logger.info("  Launch dir:  %s", app.state.launch_session_dir)
    uvicorn.run(app, host=settings.debug.host, port=settings.debug.port, log_config=None)


if __name__ == "__main__":
    main()
