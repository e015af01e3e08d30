import logging
import os
import sys
from pathlib import Path
from typing import Any, Literal

import logfire
import yaml
from pydantic import BaseModel
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from airlocal.domain.sync.port.runtime import DEFAULT_PLATFORM
from airlocal.domain.sync.service.workspace import DEFAULT_PREFIX


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Load settings from YAML file specified by AIRLOCAL_SETTINGS_FILE env var."""

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        """Get the value for a field from the YAML config."""
        yaml_data = self._load_yaml_config()
        field_value = yaml_data.get(field_name)
        return field_value, field_name, False

    def __call__(self) -> dict[str, Any]:
        """Return all settings from YAML file."""
        return self._load_yaml_config()

    def _load_yaml_config(self) -> dict[str, Any]:
        """Load config from YAML file if specified."""
        config_file = os.environ.get("AIRLOCAL_SETTINGS_FILE")
        if config_file:
            path = Path(config_file)
            if path.exists():
                return yaml.safe_load(path.read_text()) or {}
        return {}


class LoggingConfig(BaseModel):
    """Logging configuration (nested in Config, uses env_nested_delimiter)."""

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"

    @property
    def file(self) -> str | None:
        """Get log file path from AIRLOCAL_LOG_FILE env var."""
        return os.environ.get("AIRLOCAL_LOG_FILE")


class RuntimeConfig(BaseModel):
    """Container engine settings.

    When airlocal itself runs in a container with the Docker socket mounted, set
    ``host_data_dir`` and ``container_data_dir`` so workspace bind mounts are
    translated to paths the Docker daemon can resolve.
    """

    docker_url: str | None = None  # None = DOCKER_HOST or the local socket
    platform: str = DEFAULT_PLATFORM
    stop_timeout: int = 10  # Grace period (seconds) before containers are killed
    host_data_dir: str | None = None
    container_data_dir: str = "/data"


class WorkspaceConfig(BaseModel):
    """Workspace configuration (nested in Config, uses env_nested_delimiter)."""

    base_dir: Path | None = None  # None = system temp dir
    prefix: str = DEFAULT_PREFIX  # Prefix of generated file names


class SyncConfig(BaseModel):
    """How source output reaches the destination.

    buffered: source output is filtered into a spool file in the workspace, then
        fed to the destination once the source has exited.
    streaming: the destination runs alongside the source and reads its output
        as it is produced.
    """

    handoff: Literal["buffered", "streaming"] = "buffered"


class Config(BaseSettings):
    logging: LoggingConfig = LoggingConfig()
    runtime: RuntimeConfig = RuntimeConfig()
    workspace: WorkspaceConfig = WorkspaceConfig()
    sync: SyncConfig = SyncConfig()

    model_config = {
        "env_prefix": "AIRLOCAL_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",  # Allows AIRLOCAL_RUNTIME__STOP_TIMEOUT override
        "extra": "ignore",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources to include YAML config.

        Priority (highest to lowest):
        1. init_settings - values passed to Config()
        2. env_settings - environment variables
        3. dotenv_settings - .env file
        4. yaml_settings - AIRLOCAL_SETTINGS_FILE yaml
        5. file_secret_settings - secrets from files
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def configure_logging(config: LoggingConfig, *, debug: bool = False) -> None:
    """Configure Python logging based on config.

    Should be called once at startup, before the first run.
    """
    level = "DEBUG" if debug else config.level

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(config.format, datefmt=config.date_format)

    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
    else:
        # stderr keeps stdout free for source output in --src-only mode
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiodocker").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    # Spans from the container runtime are exported only when a token is configured
    logfire.configure(send_to_logfire="if-token-present", console=False, service_name="airlocal")

    logging.debug("Logging configured: level=%s, file=%s", level, config.file)
