"""Command-line interface for abpctl.

Provides the entry point for launching the engine in the foreground,
running the debug server, or bridging MCP over stdin/stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="abpctl",
        description="Supervise, monitor, and bridge the ABP browser engine",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/abpctl.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    launch_parser = subparsers.add_parser("launch", help="Run the engine in the foreground")
    launch_parser.add_argument("--port", type=int, default=None, help="Engine API port")
    launch_parser.add_argument("--headless", action="store_true", help="Run without a window")
    launch_parser.add_argument(
        "--session-dir", type=str, default=None,
        help="Session directory (default: sessions/<timestamp>)",
    )
    launch_parser.add_argument(
        "extra", nargs=argparse.REMAINDER,
        help="Extra engine arguments (after --)",
    )

    debug_parser = subparsers.add_parser("debug", help="Start the debug server")
    debug_parser.add_argument("--port", type=int, default=None, help="Debug server port")
    debug_parser.add_argument(
        "--abp-url", type=str, default=None,
        help="Engine URL (default: http://127.0.0.1:8222)",
    )
    debug_parser.add_argument(
        "--session-dir", type=str, default=None,
        help="Session directory used when starting the engine from the UI",
    )
    debug_parser.add_argument(
        "--abp-binary", type=str, default=None,
        help="Path to the ABP binary",
    )

    bridge_parser = subparsers.add_parser("bridge", help="Bridge MCP over stdin/stdout")
    bridge_parser.add_argument("--headless", action="store_true", help="Run without a window")

    return parser.parse_args(argv)


def _apply_engine_url(settings, url: str) -> None:
    import httpx

    parsed = httpx.URL(url)
    if parsed.host:
        settings.engine.host = parsed.host
    if parsed.port:
        settings.engine.port = parsed.port


async def _launch(settings, args) -> int:
    """Start the engine and keep it running until interrupted."""
    from abpctl.config.settings import default_session_dir
    from abpctl.engine.client import EngineClient
    from abpctl.engine.paths import find_engine_binary
    from abpctl.engine.supervisor import LaunchConfig, ProcessSupervisor, SupervisorError

    eng = settings.engine
    engine = EngineClient(
        eng.base_url,
        status_timeout=eng.status_timeout,
        session_data_timeout=eng.session_data_timeout,
        shutdown_timeout=eng.shutdown_timeout,
    )
    supervisor = ProcessSupervisor(
        engine,
        ready_timeout=eng.ready_timeout,
        poll_interval=eng.poll_interval,
        stop_timeout=eng.stop_timeout,
    )

    extra = [a for a in args.extra if a != "--"]
    config = LaunchConfig(
        session_dir=Path(args.session_dir or eng.session_dir or default_session_dir()).resolve(),
        executable_path=find_engine_binary(eng.binary) or None,
        window_width=eng.window_width,
        window_height=eng.window_height,
        headless=args.headless or eng.headless,
        extra_args=[*eng.extra_args, *extra],
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        await supervisor.start(config)
    except SupervisorError as e:
        logger.error("%s", e)
        await engine.aclose()
        return 1

    print(f"ABP running on {eng.base_url} (pid {supervisor.pid})", file=sys.stderr)
    print(f"Session dir: {config.session_dir}", file=sys.stderr)
    print("Press Ctrl+C to stop.", file=sys.stderr)

    try:
        while supervisor.is_managed and not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
        if not supervisor.is_managed:
            logger.error("%s", supervisor.last_error or "ABP exited")
            return 1
    finally:
        if supervisor.is_managed:
            await supervisor.stop()
        await engine.aclose()
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the abpctl CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from abpctl.config.settings import load_settings
    from abpctl.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "launch":
        if args.port:
            settings.engine.port = args.port
        logger.info("Launching ABP on port %d", settings.engine.port)
        sys.exit(asyncio.run(_launch(settings, args)))

    elif args.command == "debug":
        from abpctl.server.app import main as serve_debug

        if args.port:
            settings.debug.port = args.port
        if args.abp_url:
            _apply_engine_url(settings, args.abp_url)
        logger.info("Starting debug server")
        serve_debug(
            settings,
            launch_session_dir=args.session_dir,
            abp_binary=args.abp_binary,
        )

    elif args.command == "bridge":
        from abpctl.bridge.stdio import serve_stdio

        logger.info("Starting MCP stdio bridge")
        asyncio.run(serve_stdio(settings, headless=args.headless))


if __name__ == "__main__":
    main()
