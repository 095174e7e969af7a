"""Configuration management for abpctl.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides, including the legacy
``ABP_*`` variables understood by the engine launcher.
"""

from abpctl.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
