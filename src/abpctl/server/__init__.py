"""HTTP debug server for abpctl.

Public API:
    create_app -- Build the FastAPI application
    EngineProxy -- Reverse proxy to the engine's REST API
"""

from abpctl.server.app import create_app
from abpctl.server.proxy import EngineProxy

__all__ = ["EngineProxy", "create_app"]
