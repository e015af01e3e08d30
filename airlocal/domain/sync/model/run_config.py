"""Run configuration: the normalized description of one sync job."""

from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import Field

from airlocal.domain.shared.model.value import ValueObject

# Source output target meaning "the operator's terminal"
STDOUT = "-"


class Role(StrEnum):
    SOURCE = "source"
    DESTINATION = "destination"

    @property
    def tag(self) -> str:
        """Short tag used in file names and terminal framing."""
        return "src" if self is Role.SOURCE else "dst"


class LogLevel(StrEnum):
    """Log level handed to the connectors through LOG_LEVEL."""

    FATAL = "fatal"
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"
    TRACE = "trace"


class RunMode(StrEnum):
    SYNC = "sync"
    SOURCE_ONLY = "source_only"
    DESTINATION_ONLY = "destination_only"


class ResourceLimits(ValueObject):
    """Per-container limits, in operator units (MiB, CPUs, docker size string)."""

    max_memory_mb: int | None = None
    max_cpus: float | None = None
    max_log_size: str = "10m"


class ConnectorSpec(ValueObject):
    """One side of a sync: the connector image and the files generated for it."""

    image: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    catalog: dict[str, Any] = Field(default_factory=dict)
    docker_options: str | None = None
    limits: ResourceLimits = Field(default_factory=ResourceLimits)

    def as_reference(self) -> dict[str, Any]:
        """The config-file shape of this spec (as accepted by --config-file)."""
        ref: dict[str, Any] = {"image": self.image, "config": self.config}
        if self.catalog:
            ref["catalog"] = self.catalog
        if self.docker_options:
            ref["dockerOptions"] = self.docker_options
        return ref


class RunConfig(ValueObject):
    """Validated, strongly-typed options for one invocation.

    Built only by `resolve_run_config`, which enforces the mode invariants.
    """

    src: ConnectorSpec | None = None
    dst: ConnectorSpec | None = None

    full_refresh: bool = False
    raw_messages: bool = False
    state_file: Path | None = None
    connection_name: str | None = None

    src_only: bool = False
    src_output_file: str | None = None  # file path, or STDOUT when src_only
    dst_only_input_file: Path | None = None
    src_check_connection: bool = False

    src_pull: bool = True
    dst_pull: bool = True
    keep_containers: bool = False
    log_level: LogLevel = LogLevel.INFO
    dst_use_host_network: bool = False
    dst_stream_prefix: str | None = None
    debug: bool = False

    @property
    def mode(self) -> RunMode:
        if self.dst_only_input_file is not None:
            return RunMode.DESTINATION_ONLY
        if self.src_only or self.src_output_file is not None:
            return RunMode.SOURCE_ONLY
        return RunMode.SYNC

    @property
    def runs_source(self) -> bool:
        return self.mode is not RunMode.DESTINATION_ONLY

    @property
    def runs_destination(self) -> bool:
        return self.mode is not RunMode.SOURCE_ONLY

    @property
    def output_target(self) -> str | None:
        """Where forwarded source output goes in source-only mode."""
        if self.mode is not RunMode.SOURCE_ONLY:
            return None
        return self.src_output_file or STDOUT

    @property
    def resolved_state_file(self) -> Path:
        """State file read before and written after the sync."""
        if self.state_file is not None:
            return self.state_file
        if self.connection_name:
            return Path(f"{self.connection_name}__state.json")
        return Path("state.json")

    @property
    def state_file_is_explicit(self) -> bool:
        return self.state_file is not None

    def spec_for(self, role: Role) -> ConnectorSpec:
        spec = self.src if role is Role.SOURCE else self.dst
        return spec or ConnectorSpec()

    def pulls(self, role: Role) -> bool:
        """Whether the image for `role` should be pulled before the run."""
        if role is Role.SOURCE:
            return self.src_pull and self.runs_source
        return self.dst_pull and self.runs_destination
