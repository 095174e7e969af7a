"""Configuration management for abpctl.

Loads settings from a YAML configuration file with environment variable
overrides. Supports .env files and the unprefixed ``ABP_*`` variables
that the engine launcher has always honoured.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/abpctl.yaml")


class EngineConfig(BaseModel):
    host: str = Field(default="127.0.0.1", description="ABP listens on IPv4 only")
    port: int = Field(default=8222, ge=1, le=65535)
    binary: str | None = Field(default=None, description="Path to the ABP executable")
    session_dir: str | None = Field(default=None)
    headless: bool = Field(default=False)
    window_width: int = Field(default=1280, gt=0)
    window_height: int = Field(default=800, gt=0)
    extra_args: list[str] = Field(default_factory=list)
    ready_timeout: float = Field(default=15.0, gt=0)
    poll_interval: float = Field(default=0.3, gt=0)
    stop_timeout: float = Field(default=5.0, gt=0)
    restart_settle: float = Field(default=1.0, ge=0)
    status_timeout: float = Field(default=2.0, gt=0)
    session_data_timeout: float = Field(default=3.0, gt=0)
    shutdown_timeout: float = Field(default=5.0, gt=0)
    proxy_timeout: float = Field(default=60.0, gt=0)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class DebugServerConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8223, ge=1, le=65535)
    debounce: float = Field(default=0.2, gt=0)
    watch_interval: float = Field(default=0.25, gt=0)
    attach_retry_window: float = Field(default=5.0, ge=0)
    attach_retry_interval: float = Field(default=0.5, gt=0)
    ui_path: str | None = Field(default=None)


class TransformConfig(BaseModel):
    max_image_dimension: int = Field(default=1568, gt=0)
    max_image_pixels: float = Field(default=1.15 * 1024 * 1024, gt=0)
    max_text_length: int = Field(default=4000, gt=0)
    image_quality: int = Field(default=80, ge=1, le=100)
    image_mime_type: str = Field(default="image/webp")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for abpctl.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "ABPCTL_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    engine: EngineConfig = Field(default_factory=EngineConfig)
    debug: DebugServerConfig = Field(default_factory=DebugServerConfig)
    transform: TransformConfig = Field(default_factory=TransformConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def default_session_dir(base: Path | None = None) -> Path:
    """Return ``<base>/sessions/<UTC timestamp>`` for a fresh launch."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return ((base or Path.cwd()) / "sessions" / stamp).resolve()


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: env vars > .env file > YAML file > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    # Load .env file manually for non-prefixed vars
    _load_dotenv()

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.debug("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _load_dotenv() -> None:
    """Load .env file into os.environ if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                if not os.environ.get(key):
                    os.environ[key] = value


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply the launcher's legacy ``ABP_*`` variables."""
    port = os.environ.get("ABP_PORT", "")
    headless = os.environ.get("ABP_HEADLESS", "")
    extra_args = os.environ.get("ABP_ARGS", "")
    binary = os.environ.get("ABP_BROWSER_PATH", "")

    if "engine" not in yaml_data or yaml_data["engine"] is None:
        yaml_data["engine"] = {}
    engine = yaml_data["engine"]

    if port:
        try:
            engine["port"] = int(port)
        except ValueError:
            logger.warning("Ignoring non-numeric ABP_PORT=%r", port)

    if headless == "1":
        engine["headless"] = True

    if extra_args:
        engine["extra_args"] = [a for a in extra_args.split(",") if a]

    if binary and not engine.get("binary"):
        engine["binary"] = binary
