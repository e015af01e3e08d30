"""ConnectorSession — one running source or destination container."""

import asyncio
import logging
import shlex
import sys
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import BinaryIO

from airlocal.domain.shared.error import ConnectorFailed
from airlocal.domain.sync.model.run_config import ConnectorSpec, Role, RunConfig
from airlocal.domain.sync.port.runtime import (
    DEFAULT_PLATFORM,
    ContainerRuntime,
    ContainerSpec,
    OutputStream,
)

logger = logging.getLogger(__name__)

# Where the workspace is mounted inside connector containers
CONFIGS_MOUNT = "/configs"


class SessionState(StrEnum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    REMOVED = "removed"


def docker_env(options: str | None) -> dict[str, str]:
    """Extract `-e/--env KEY=VALUE` entries from a docker options string.

    Other docker run options cannot be expressed through the engine API and are
    reported as ignored.
    """
    env: dict[str, str] = {}
    if not options:
        return env
    tokens = shlex.split(options)
    ignored: list[str] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        value: str | None = None
        if token in ("-e", "--env") and i + 1 < len(tokens):
            value = tokens[i + 1]
            i += 1
        elif token.startswith("--env="):
            value = token.removeprefix("--env=")
        else:
            ignored.append(token)
        if value is not None:
            key, sep, val = value.partition("=")
            if sep:
                env[key] = val
            else:
                ignored.append(value)
        i += 1
    if ignored:
        logger.warning("Ignoring unsupported docker options: %s", " ".join(ignored))
    return env


def connector_container_spec(
    role: Role,
    config: RunConfig,
    *,
    workspace_dir: str,
    config_filename: str,
    catalog_filename: str,
    state_filename: str = "state.json",
    platform: str | None = DEFAULT_PLATFORM,
) -> ContainerSpec:
    """Build the container invocation for a sync run of `role`."""
    spec: ConnectorSpec = config.spec_for(role)
    if role is Role.SOURCE:
        command = [
            "read",
            "--config",
            f"{CONFIGS_MOUNT}/{config_filename}",
            "--catalog",
            f"{CONFIGS_MOUNT}/{catalog_filename}",
            "--state",
            f"{CONFIGS_MOUNT}/{state_filename}",
        ]
    else:
        command = [
            "write",
            "--config",
            f"{CONFIGS_MOUNT}/{config_filename}",
            "--catalog",
            f"{CONFIGS_MOUNT}/{catalog_filename}",
        ]

    env = {**docker_env(spec.docker_options), "LOG_LEVEL": config.log_level.value}
    return ContainerSpec(
        image=spec.image,
        command=command,
        binds=[f"{workspace_dir}:{CONFIGS_MOUNT}:rw"],
        env=env,
        limits=spec.limits,
        platform=platform,
        network_mode="host" if role is Role.DESTINATION and config.dst_use_host_network else None,
        open_stdin=role is Role.DESTINATION,
    )


class ConnectorSession:
    """Owns one connector container from creation to removal.

    stderr is forwarded to `stderr` as it arrives and is never buffered; stdout is
    exposed through `output()` for the stream processor.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        role: Role,
        spec: ContainerSpec,
        *,
        cid_file: Path | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self.runtime = runtime
        self.role = role
        self.spec = spec
        self.cid_file = cid_file
        self.state = SessionState.CREATED
        self.container_id: str | None = None
        self.started_at: datetime | None = None
        self.exit_code: int | None = None
        self._stderr = stderr if stderr is not None else sys.stderr.buffer
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def label(self) -> str:
        return self.role.tag.upper()

    async def start(self) -> None:
        self.state = SessionState.STARTING
        logger.info("Running %s connector: %s", self.role, self.spec.image)
        self.container_id = await self.runtime.create(self.spec)
        if self.cid_file is not None:
            # Lets an operator `docker stop $(cat ...)` if this process is killed
            self.cid_file.write_text(self.container_id)
        await self.runtime.start(self.container_id)
        self.started_at = datetime.now(UTC)
        self.state = SessionState.RUNNING
        self._stderr_task = asyncio.create_task(
            self._forward_stderr(), name=f"{self.role.tag}-stderr"
        )

    async def _forward_stderr(self) -> None:
        assert self.container_id is not None
        try:
            async for chunk in self.runtime.read_output(self.container_id, OutputStream.STDERR):
                self._stderr.write(chunk)
                self._stderr.flush()
        except Exception as e:
            logger.debug("stderr forwarding for %s stopped: %s", self.label, e)

    def output(self) -> AsyncIterator[bytes]:
        """Demultiplexed stdout chunks."""
        if self.container_id is None:
            raise RuntimeError(f"{self.role} session is not started")
        return self.runtime.read_output(self.container_id, OutputStream.STDOUT)

    async def write(self, data: bytes) -> None:
        if self.container_id is None:
            raise RuntimeError(f"{self.role} session is not started")
        await self.runtime.write_input(self.container_id, data)

    async def close_input(self) -> None:
        if self.container_id is None:
            raise RuntimeError(f"{self.role} session is not started")
        await self.runtime.close_input(self.container_id)

    async def wait(self) -> int:
        """Block until the container exits.

        Raises:
            ConnectorFailed: If the container exit code is not 0.
        """
        if self.container_id is None:
            raise RuntimeError(f"{self.role} session is not started")
        self.exit_code = await self.runtime.wait(self.container_id)
        self.state = SessionState.EXITED
        if self._stderr_task is not None:
            await self._stderr_task
        logger.debug("%s container %s exited with %s", self.label, self.container_id, self.exit_code)
        if self.exit_code != 0:
            raise ConnectorFailed(self.role.value, self.exit_code)
        return self.exit_code

    async def remove(self) -> None:
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        if self.container_id is None or self.state is SessionState.REMOVED:
            return
        await self.runtime.remove(self.container_id)
        self.state = SessionState.REMOVED
