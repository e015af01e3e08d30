from dishka import AsyncContainer, Provider, from_context, make_async_container, provide

from airlocal.cli.console import Console, get_console
from airlocal.config import Config
from airlocal.domain.sync.port.runtime import ContainerRuntime
from airlocal.domain.sync.service.orchestrator import OrchestratorSettings, SyncOrchestrator
from airlocal.infrastructure.oci.di import OciProvider
from airlocal.util.di.scope import Scope


class SyncProvider(Provider):
    config = from_context(provides=Config, scope=Scope.APP)

    @provide(scope=Scope.APP)
    def get_console(self) -> Console:
        return get_console()

    @provide(scope=Scope.APP)
    def get_settings(self, config: Config) -> OrchestratorSettings:
        return OrchestratorSettings(
            platform=config.runtime.platform,
            stop_timeout=config.runtime.stop_timeout,
            handoff=config.sync.handoff,
            workspace_base_dir=config.workspace.base_dir,
            prefix=config.workspace.prefix,
        )

    @provide(scope=Scope.RUN)
    def get_orchestrator(
        self, runtime: ContainerRuntime, settings: OrchestratorSettings, console: Console
    ) -> SyncOrchestrator:
        return SyncOrchestrator(runtime, settings, console=console)


def create_container(config: Config | None = None) -> AsyncContainer:
    # Pydantic Settings populates from env vars at runtime
    config = config or Config()  # type: ignore[call-arg]

    return make_async_container(
        SyncProvider(),
        OciProvider(),
        context={Config: config},
        scopes=Scope,  # type: ignore[arg-type]  # Custom scope class
    )
