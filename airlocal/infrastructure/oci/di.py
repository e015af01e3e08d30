from typing import AsyncIterable

import aiodocker
from dishka import Provider, provide

from airlocal.config import Config
from airlocal.domain.shared.error import RuntimeUnavailable
from airlocal.domain.sync.port.runtime import ContainerRuntime
from airlocal.infrastructure.oci.runtime import AiodockerRuntime
from airlocal.util.di.scope import Scope


class OciProvider(Provider):
    @provide(scope=Scope.APP)
    async def get_docker(self, config: Config) -> AsyncIterable[aiodocker.Docker]:
        try:
            docker = aiodocker.Docker(url=config.runtime.docker_url)
        except ValueError as e:
            # No DOCKER_HOST and no local socket
            raise RuntimeUnavailable(f"Docker is not installed or not reachable: {e}") from e
        yield docker
        await docker.close()

    @provide(scope=Scope.RUN)
    def get_runtime(self, docker: aiodocker.Docker, config: Config) -> ContainerRuntime:
        return AiodockerRuntime(
            docker=docker,
            host_data_dir=config.runtime.host_data_dir,
            container_data_dir=config.runtime.container_data_dir,
        )
