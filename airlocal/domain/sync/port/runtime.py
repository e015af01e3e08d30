"""ContainerRuntime port — interface to the container engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import AsyncIterator, Protocol, runtime_checkable

from airlocal.domain.sync.model.run_config import ResourceLimits

# Published connector images are single-arch
DEFAULT_PLATFORM = "linux/amd64"


class OutputStream(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to create one connector container."""

    image: str
    command: list[str]
    binds: list[str] = field(default_factory=list)  # "host_path:container_path:mode"
    env: dict[str, str] = field(default_factory=dict)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    platform: str | None = DEFAULT_PLATFORM
    network_mode: str | None = None
    open_stdin: bool = False
    name: str | None = None


@runtime_checkable
class ContainerRuntime(Protocol):
    """Narrow capability interface over the container engine.

    Container ids returned by `create` are the only handle callers keep.
    """

    async def check_available(self) -> None:
        """Raise RuntimeUnavailable if the engine cannot be reached."""
        ...

    async def pull_image(self, image: str, platform: str | None = None) -> None:
        """Pull an image. Raises RuntimeUnavailable or PullFailed."""
        ...

    async def run_and_capture(self, spec: ContainerSpec) -> tuple[int, bytes]:
        """Run a container to completion, returning (exit_code, stdout)."""
        ...

    async def create(self, spec: ContainerSpec) -> str:
        """Create a container (attaching stdin when requested) and return its id."""
        ...

    async def start(self, container_id: str) -> None: ...

    def read_output(self, container_id: str, stream: OutputStream) -> AsyncIterator[bytes]:
        """Yield raw chunks of one output stream until the container closes it."""
        ...

    async def write_input(self, container_id: str, data: bytes) -> None:
        """Write to container stdin; blocks while the container is not reading."""
        ...

    async def close_input(self, container_id: str) -> None:
        """Signal end-of-input on container stdin."""
        ...

    async def wait(self, container_id: str) -> int:
        """Block until the container exits and return its exit code."""
        ...

    async def remove(self, container_id: str) -> None: ...

    async def stop_all(self, container_ids: list[str], timeout: int = 10) -> None:
        """Stop containers best-effort. Never raises."""
        ...
