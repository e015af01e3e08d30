"""Main CLI application using Cyclopts.

`airlocal` runs a sync; `airlocal check` only validates the source connection.
Dotted overrides (`--src.config.api_key KEY`) are split out of argv before
cyclopts parses the rest.
"""

import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import cyclopts
from cyclopts import Parameter

from airlocal import __version__
from airlocal.application.di import create_container
from airlocal.cli.args import as_cli_options, parse_cli_overrides, split_connector_overrides
from airlocal.cli.console import get_console
from airlocal.config import Config, configure_logging
from airlocal.domain.shared.error import AirlocalError
from airlocal.domain.sync.model.run_config import RunConfig
from airlocal.domain.sync.service.orchestrator import SyncOrchestrator, SyncResult
from airlocal.domain.sync.service.resolve import resolve_run_config
from airlocal.util.di.scope import Scope

logger = logging.getLogger(__name__)

T = TypeVar("T")

app = cyclopts.App(
    name="airlocal",
    help="Run source and destination connectors locally in Docker.",
    version=__version__,
)

Hidden = Parameter(show=False)


async def _with_orchestrator(config: Config, action: Callable[[SyncOrchestrator], Awaitable[T]]) -> T:
    """Resolve the orchestrator and run `action`; SIGTERM cancels it so cleanup runs."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    assert task is not None
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    container = create_container(config)
    try:
        async with container(scope=Scope.RUN) as run_container:
            orchestrator = await run_container.get(SyncOrchestrator)
            return await action(orchestrator)
    finally:
        await container.close()
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGTERM)


def _prepare(options: dict[str, Any]) -> tuple[Config, RunConfig]:
    config = Config()  # type: ignore[call-arg]
    configure_logging(config.logging, debug=bool(options.get("debug")))
    return config, resolve_run_config(options)


def _execute(options: dict[str, Any], action: Callable[[SyncOrchestrator, RunConfig], Awaitable[T]]) -> T:
    """Shared error mapping: every failure is one error line and exit code 1."""
    console = get_console()
    try:
        config, run_config = _prepare(options)
        return asyncio.run(_with_orchestrator(config, lambda orchestrator: action(orchestrator, run_config)))
    except AirlocalError as e:
        logger.debug("Run failed", exc_info=True)
        console.error(e.message)
        sys.exit(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.error("Interrupted. Containers and workspace were cleaned up.")
        sys.exit(1)


def _report(result: SyncResult) -> None:
    console = get_console()
    stats = result.stats
    console.table(
        [
            {
                "mode": result.mode,
                "records": stats.records,
                "forwarded": stats.forwarded,
                "dropped": stats.dropped,
                "state": result.state_file or "-",
                "duration": f"{result.duration_seconds:.1f}s",
            }
        ],
        [
            ("mode", "Mode"),
            ("records", "Records"),
            ("forwarded", "Forwarded"),
            ("dropped", "Dropped"),
            ("state", "State file"),
            ("duration", "Duration"),
        ],
    )
    console.success("Sync completed successfully")


@app.default
def sync(
    *,
    config_file: Path | None = None,
    src: str | None = None,
    dst: str | None = None,
    src_catalog_json: str | None = None,
    src_catalog_file: Path | None = None,
    dst_catalog_json: str | None = None,
    dst_catalog_file: Path | None = None,
    src_docker_options: str | None = None,
    dst_docker_options: str | None = None,
    full_refresh: bool = False,
    state_file: Path | None = None,
    src_pull: bool = True,
    dst_pull: bool = True,
    src_only: bool = False,
    src_output_file: str | None = None,
    src_check_connection: bool = False,
    dst_only: Path | None = None,
    dst_use_host_network: bool = False,
    dst_stream_prefix: str | None = None,
    connection_name: str | None = None,
    log_level: str = "info",
    raw_messages: bool = False,
    keep_containers: bool = False,
    max_log_size: str = "10m",
    max_mem: int | None = None,
    max_cpus: float | None = None,
    debug: bool = False,
    check_connection: Annotated[bool, Hidden] = False,
    state: Annotated[Path | None, Hidden] = None,
    src_override: Annotated[list[str] | None, Hidden] = None,
    dst_override: Annotated[list[str] | None, Hidden] = None,
) -> None:
    """Run a sync from a source connector to a destination connector.

    Args:
        config_file: JSON file with `src` and `dst` connector entries.
        src: Source connector image.
        dst: Destination connector image.
        src_catalog_json: Source catalog as inline JSON.
        src_catalog_file: Source catalog file.
        dst_catalog_json: Destination catalog as inline JSON.
        dst_catalog_file: Destination catalog file.
        src_docker_options: Extra docker options for the source (only -e/--env is honoured).
        dst_docker_options: Extra docker options for the destination (only -e/--env is honoured).
        full_refresh: Sync everything from scratch; the state file is left untouched.
        state_file: State file to read and update.
        src_pull: Pull the source image before running.
        dst_pull: Pull the destination image before running.
        src_only: Run only the source and print its output.
        src_output_file: Run only the source and write its output to this file ('-' for stdout).
        src_check_connection: Validate the source connection before syncing.
        dst_only: Run only the destination, reading input from this file.
        dst_use_host_network: Use the host network for the destination container.
        dst_stream_prefix: Prefix for destination stream names.
        connection_name: Connection name; the default state file is <name>__state.json.
        log_level: Connector log level (fatal, error, warn, info, debug, trace).
        raw_messages: Forward every source line unfiltered.
        keep_containers: Keep containers and the workspace after the run.
        max_log_size: Maximum container log size (docker size string).
        max_mem: Container memory limit in MiB.
        max_cpus: Container CPU limit.
        debug: Debug logging; also keeps the workspace.
    """
    options = dict(locals())
    options["src_overrides"] = parse_cli_overrides(options.pop("src_override"))
    options["dst_overrides"] = parse_cli_overrides(options.pop("dst_override"))

    async def action(orchestrator: SyncOrchestrator, run_config: RunConfig) -> SyncResult:
        return await orchestrator.run(run_config)

    _report(_execute(options, action))


@app.command
def check(
    *,
    config_file: Path | None = None,
    src: str | None = None,
    src_pull: bool = True,
    log_level: str = "info",
    debug: bool = False,
    src_override: Annotated[list[str] | None, Hidden] = None,
) -> None:
    """Validate the source connector configuration without moving data.

    Args:
        config_file: JSON file with `src` and `dst` connector entries.
        src: Source connector image.
        src_pull: Pull the source image before checking.
        log_level: Connector log level.
        debug: Debug logging; also keeps the workspace.
    """
    options = dict(locals())
    options["src_overrides"] = parse_cli_overrides(options.pop("src_override"))
    options["src_only"] = True

    async def action(orchestrator: SyncOrchestrator, run_config: RunConfig) -> None:
        await orchestrator.check(run_config)

    _execute(options, action)
    get_console().success("Source connection is valid")


def main(argv: list[str] | None = None) -> None:
    tokens = list(sys.argv[1:] if argv is None else argv)
    try:
        remaining, src_overrides, dst_overrides = split_connector_overrides(tokens)
    except AirlocalError as e:
        get_console().error(e.message)
        sys.exit(1)
    app(remaining + as_cli_options(src_overrides, dst_overrides))


if __name__ == "__main__":
    main()
