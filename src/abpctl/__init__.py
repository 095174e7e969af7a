"""abpctl -- Supervision, monitoring, and protocol bridging for ABP.

This package wraps a separately built Agent Browser Protocol (ABP)
engine. It keeps an engine process alive and observable, mirrors the
engine's on-disk session history into a live debug server, and bridges
a stdin/stdout JSON-RPC stream to the engine's HTTP MCP endpoint.
"""

__version__ = "0.1.0"
