"""Container runtime using aiodocker."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

import aiodocker
import logfire
from aiodocker.stream import Stream

from airlocal.domain.shared.error import (
    CleanupError,
    ConnectorInputClosed,
    ContainerStartFailed,
    ContainerStreamFailed,
    PullFailed,
    RuntimeUnavailable,
)
from airlocal.domain.sync.model.run_config import ResourceLimits
from airlocal.domain.sync.port.runtime import ContainerRuntime, ContainerSpec, OutputStream


def _memory_bytes(mebibytes: int) -> int:
    return mebibytes * 1024 * 1024


def _with_default_tag(image: str) -> str:
    """Pulling an untagged reference would fetch every tag."""
    name = image.rsplit("/", 1)[-1]
    if "@" in name or ":" in name:
        return image
    return f"{image}:latest"


class AiodockerRuntime(ContainerRuntime):
    """Runs connector containers through the Docker Engine API.

    Output streams are read through attach sockets, demultiplexed by aiodocker,
    so stdout and stderr never mix. Destination stdin is a separate attach
    opened at creation time; closing it signals end-of-input (StdinOnce).

    When running inside a container with the Docker socket mounted (sibling containers),
    set ``host_data_dir`` and ``container_data_dir`` so bind mount paths are translated
    from container-internal paths to host paths that the Docker daemon can resolve.
    """

    def __init__(
        self,
        docker: aiodocker.Docker,
        host_data_dir: str | None = None,
        container_data_dir: str = "/data",
    ):
        self._docker = docker
        self._host_data_dir = host_data_dir
        self._container_data_dir = container_data_dir
        self._stdin: dict[str, Stream] = {}
        self._stdin_stacks: dict[str, AsyncExitStack] = {}

    # -------------------------------------------------------------------------
    # Engine
    # -------------------------------------------------------------------------

    async def check_available(self) -> None:
        try:
            version = await self._docker.version()
        except (aiodocker.DockerError, OSError) as e:
            logfire.error("Docker engine unreachable", error=str(e))
            raise RuntimeUnavailable(
                "Docker is not running or not reachable. Please make sure Docker is installed and running."
            ) from e
        logfire.info("Docker engine available", version=version.get("Version"))

    async def pull_image(self, image: str, platform: str | None = None) -> None:
        reference = _with_default_tag(image)
        with logfire.span("Pulling image {image}", image=reference, platform=platform):
            try:
                progress = await self._docker.images.pull(reference, platform=platform)
            except aiodocker.DockerError as e:
                raise PullFailed(image, e.message) from e
            except OSError as e:
                raise RuntimeUnavailable(f"Docker is not reachable: {e}") from e
            # Registry errors arrive as progress entries on a 200 response
            for entry in progress or []:
                if isinstance(entry, dict) and entry.get("error"):
                    raise PullFailed(image, str(entry["error"]))

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def _host_path(self, container_path: Path) -> str:
        """Translate a container-internal path to a host path for bind mounts."""
        path_str = str(container_path)
        if self._host_data_dir:
            path_str = path_str.replace(self._container_data_dir, self._host_data_dir, 1)
        return path_str

    def _host_bind(self, bind: str) -> str:
        source, _, target = bind.partition(":")
        return f"{self._host_path(Path(source))}:{target}"

    def _host_config(self, spec: ContainerSpec) -> dict[str, Any]:
        limits: ResourceLimits = spec.limits
        host: dict[str, Any] = {
            "Binds": [self._host_bind(b) for b in spec.binds],
            "LogConfig": {"Type": "json-file", "Config": {"max-size": limits.max_log_size}},
        }
        if limits.max_memory_mb:
            host["Memory"] = _memory_bytes(limits.max_memory_mb)
            host["MemorySwap"] = _memory_bytes(limits.max_memory_mb)
        if limits.max_cpus:
            host["NanoCpus"] = int(float(limits.max_cpus) * 1e9)
        if spec.network_mode:
            host["NetworkMode"] = spec.network_mode
        return host

    def _container_config(self, spec: ContainerSpec) -> dict[str, Any]:
        return {
            "Image": spec.image,
            "Cmd": spec.command,
            "Env": [f"{key}={value}" for key, value in spec.env.items()],
            "Tty": False,
            "AttachStdout": True,
            "AttachStderr": True,
            "AttachStdin": spec.open_stdin,
            "OpenStdin": spec.open_stdin,
            "StdinOnce": spec.open_stdin,
            "HostConfig": self._host_config(spec),
        }

    async def create(self, spec: ContainerSpec) -> str:
        try:
            container = await self._docker.containers.create(self._container_config(spec), name=spec.name)
        except aiodocker.DockerError as e:
            logfire.error("Docker error creating container", image=spec.image, error=str(e))
            raise ContainerStartFailed(f"Failed to create container for {spec.image}: {e.message}") from e

        container_id = container.id
        if spec.open_stdin:
            stack = AsyncExitStack()
            try:
                self._stdin[container_id] = await stack.enter_async_context(container.attach(stdin=True))
            except (aiodocker.DockerError, OSError) as e:
                await container.delete(force=True)
                raise ContainerStartFailed(f"Failed to attach to container for {spec.image}: {e}") from e
            self._stdin_stacks[container_id] = stack
        logfire.info("Container created", image=spec.image, container_id=container_id)
        return container_id

    async def start(self, container_id: str) -> None:
        try:
            await self._docker.containers.container(container_id).start()
        except aiodocker.DockerError as e:
            raise ContainerStartFailed(f"Failed to start container {container_id}: {e.message}") from e

    async def read_output(self, container_id: str, stream: OutputStream) -> AsyncIterator[bytes]:
        container = self._docker.containers.container(container_id)
        # logs=True replays anything written before the attach
        attach = container.attach(
            stdout=stream is OutputStream.STDOUT,
            stderr=stream is OutputStream.STDERR,
            logs=True,
        )
        try:
            async with attach as attached:
                while (message := await attached.read_out()) is not None:
                    yield message.data
        except (aiodocker.DockerError, OSError) as e:
            raise ContainerStreamFailed(f"Failed to read {stream} of container {container_id}: {e}") from e

    async def write_input(self, container_id: str, data: bytes) -> None:
        stdin = self._stdin.get(container_id)
        if stdin is None:
            raise ConnectorInputClosed(f"Container {container_id} has no open stdin")
        try:
            await stdin.write_in(data)
        except (aiodocker.DockerError, OSError, RuntimeError) as e:
            raise ConnectorInputClosed(f"Container {container_id} stopped reading its input: {e}") from e

    async def close_input(self, container_id: str) -> None:
        self._stdin.pop(container_id, None)
        stack = self._stdin_stacks.pop(container_id, None)
        if stack is not None:
            await stack.aclose()

    async def wait(self, container_id: str) -> int:
        try:
            result = await self._docker.containers.container(container_id).wait()
        except (aiodocker.DockerError, OSError) as e:
            raise ContainerStreamFailed(f"Failed to wait for container {container_id}: {e}") from e
        return result.get("StatusCode", -1)

    async def remove(self, container_id: str) -> None:
        try:
            await self.close_input(container_id)
        except (aiodocker.DockerError, OSError, RuntimeError) as e:
            logfire.warn("Failed to close container stdin", container_id=container_id, error=str(e))
        try:
            await self._docker.containers.container(container_id).delete(force=True)
        except aiodocker.DockerError as e:
            if e.status == 404:
                return
            raise CleanupError(f"Failed to remove container {container_id}: {e.message}") from e
        logfire.info("Container removed", container_id=container_id)

    async def stop_all(self, container_ids: list[str], timeout: int = 10) -> None:
        if not container_ids:
            return
        await asyncio.gather(*(self._stop(cid, timeout) for cid in container_ids))

    async def _stop(self, container_id: str, timeout: int) -> None:
        try:
            await self._docker.containers.container(container_id).stop(t=timeout)
        except (aiodocker.DockerError, OSError) as e:
            logfire.warn("Failed to stop container", container_id=container_id, error=str(e))

    async def run_and_capture(self, spec: ContainerSpec) -> tuple[int, bytes]:
        container = None
        try:
            container = await self._docker.containers.create(self._container_config(spec), name=spec.name)
            await container.start()
            wait_result = await container.wait()
            exit_code = wait_result.get("StatusCode", -1)
            logs = await container.log(stdout=True)
            return exit_code, "".join(logs).encode("utf-8")
        except aiodocker.DockerError as e:
            logfire.error("Docker error running container", image=spec.image, error=str(e))
            raise ContainerStartFailed(f"Failed to run container for {spec.image}: {e.message}") from e
        finally:
            if container is not None:
                try:
                    await container.delete(force=True)
                except aiodocker.DockerError as e:
                    logfire.warn("Failed to remove container", container_id=container.id, error=str(e))
