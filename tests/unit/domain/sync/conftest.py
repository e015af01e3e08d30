"""In-memory container runtime for sync domain tests."""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import pytest

from airlocal.domain.shared.error import ConnectorInputClosed, PullFailed, RuntimeUnavailable
from airlocal.domain.sync.port.runtime import ContainerSpec, OutputStream


@dataclass
class Script:
    """What a fake container does when started."""

    stdout: list[bytes] = field(default_factory=list)
    stderr: list[bytes] = field(default_factory=list)
    exit_code: int = 0
    reject_input: bool = False
    # Keep stdout open after the scripted chunks until cancelled
    hang: bool = False


@dataclass
class FakeContainer:
    id: str
    spec: ContainerSpec
    script: Script
    started: bool = False
    removed: bool = False
    stdin: bytearray = field(default_factory=bytearray)
    stdin_closed: asyncio.Event = field(default_factory=asyncio.Event)


class FakeRuntime:
    """Implements the ContainerRuntime port without Docker.

    Containers are scripted per image. Containers with open stdin emit their
    stdout only after end-of-input, like a destination draining its input.
    """

    def __init__(self) -> None:
        self.available = True
        self.scripts: dict[str, Script] = {}
        self.pull_failures: set[str] = set()
        self.pulled: list[str] = []
        self.containers: dict[str, FakeContainer] = {}
        self.stop_calls: list[list[str]] = []
        self.removed: list[str] = []
        self.capture_result: tuple[int, bytes] = (0, b"")
        self.captured: list[ContainerSpec] = []
        self.reading = asyncio.Event()

    def script(self, image: str, **kwargs) -> Script:
        self.scripts[image] = Script(**kwargs)
        return self.scripts[image]

    def by_image(self, image: str) -> FakeContainer:
        return next(c for c in self.containers.values() if c.spec.image == image)

    async def check_available(self) -> None:
        if not self.available:
            raise RuntimeUnavailable("Docker is not running")

    async def pull_image(self, image: str, platform: str | None = None) -> None:
        if image in self.pull_failures:
            raise PullFailed(image, "manifest unknown")
        self.pulled.append(image)

    async def run_and_capture(self, spec: ContainerSpec) -> tuple[int, bytes]:
        self.captured.append(spec)
        return self.capture_result

    async def create(self, spec: ContainerSpec) -> str:
        container_id = f"cid-{len(self.containers) + 1}"
        self.containers[container_id] = FakeContainer(
            id=container_id, spec=spec, script=self.scripts.get(spec.image, Script())
        )
        return container_id

    async def start(self, container_id: str) -> None:
        self.containers[container_id].started = True

    async def read_output(self, container_id: str, stream: OutputStream) -> AsyncIterator[bytes]:
        container = self.containers[container_id]
        if stream is OutputStream.STDERR:
            for chunk in container.script.stderr:
                yield chunk
            return
        if container.spec.open_stdin:
            await container.stdin_closed.wait()
        for chunk in container.script.stdout:
            yield chunk
        self.reading.set()
        if container.script.hang:
            await asyncio.Event().wait()

    async def write_input(self, container_id: str, data: bytes) -> None:
        container = self.containers[container_id]
        if container.script.reject_input:
            container.stdin_closed.set()
            raise ConnectorInputClosed(f"Container {container_id} stopped reading its input")
        container.stdin.extend(data)

    async def close_input(self, container_id: str) -> None:
        self.containers[container_id].stdin_closed.set()

    async def wait(self, container_id: str) -> int:
        return self.containers[container_id].script.exit_code

    async def remove(self, container_id: str) -> None:
        self.containers[container_id].removed = True
        self.removed.append(container_id)

    async def stop_all(self, container_ids: list[str], timeout: int = 10) -> None:
        self.stop_calls.append(list(container_ids))


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()
