"""MCP stdio bridge for abpctl.

Public API:
    ProtocolBridge -- Forwards line-delimited JSON-RPC to the engine
    ResponseTransformer -- Shrinks images and truncates text in results
    serve_stdio -- Run the bridge on this process's stdin/stdout
"""

from abpctl.bridge.transform import ResponseTransformer

__all__ = ["ForwardError", "ProtocolBridge", "ResponseTransformer", "serve_stdio"]


def __getattr__(name: str) -> object:
    """Lazy import for the bridge runtime (pulls in the engine supervisor)."""
    if name in ("ProtocolBridge", "ForwardError", "serve_stdio"):
        from abpctl.bridge import stdio
        return getattr(stdio, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
