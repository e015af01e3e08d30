"""SyncOrchestrator — runs one source -> destination sync end to end.

Phases:
    INIT -> VALIDATED -> WORKSPACE_READY -> (CONNECTION_CHECKED) -> SOURCE_RUNNING
    -> PIPING -> DESTINATION_RUNNING -> STATE_RECONCILED -> CLEANED_UP -> DONE

Any failure (including cancellation) moves the run to FAILING and then straight to
CLEANED_UP. Cleanup lives in a single `finally` so it runs on every exit path.
"""

import asyncio
import logging
import sys
import time
from collections.abc import AsyncIterable, Awaitable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import BinaryIO, TypeVar

from airlocal.domain.shared.error import (
    AirlocalError,
    ConnectorInputClosed,
    StatePersistError,
)
from airlocal.domain.sync.model.run_config import STDOUT, Role, RunConfig, RunMode
from airlocal.domain.sync.port.runtime import DEFAULT_PLATFORM, ContainerRuntime
from airlocal.domain.sync.service.connection import check_connection
from airlocal.domain.sync.service.session import (
    ConnectorSession,
    SessionState,
    connector_container_spec,
)
from airlocal.domain.sync.service.state import StateCollector, persist_state
from airlocal.domain.sync.service.stream import (
    FileSink,
    OutputSink,
    SessionSink,
    StreamProcessor,
    StreamStats,
    TaggedLineWriter,
    TerminalSink,
    consume_destination_output,
    iter_file_chunks,
)
from airlocal.domain.sync.service.workspace import DEFAULT_PREFIX, Workspace

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunPhase(StrEnum):
    INIT = "init"
    VALIDATED = "validated"
    WORKSPACE_READY = "workspace_ready"
    CONNECTION_CHECKED = "connection_checked"
    SOURCE_RUNNING = "source_running"
    PIPING = "piping"
    DESTINATION_RUNNING = "destination_running"
    STATE_RECONCILED = "state_reconciled"
    FAILING = "failing"
    CLEANED_UP = "cleaned_up"
    DONE = "done"


@dataclass(frozen=True)
class OrchestratorSettings:
    platform: str | None = DEFAULT_PLATFORM
    stop_timeout: int = 10
    handoff: str = "buffered"  # or "streaming"
    workspace_base_dir: Path | None = None
    prefix: str = DEFAULT_PREFIX
    reference_dir: Path | None = None  # where <prefix>_config.json goes; None = cwd


@dataclass
class SyncResult:
    mode: RunMode
    stats: StreamStats = field(default_factory=StreamStats)
    state_persisted: bool = False
    state_file: Path | None = None
    duration_seconds: float = 0.0


@dataclass
class _RunContext:
    config: RunConfig
    phase: RunPhase = RunPhase.INIT
    workspace: Workspace | None = None
    sessions: list[ConnectorSession] = field(default_factory=list)


class _StdoutWriter:
    """Fallback terminal writer when no console is injected."""

    def tagged_line(self, tag: str, timestamp: str, text: str) -> None:
        sys.stdout.write(f"[{tag}] {timestamp} {text}\n")
        sys.stdout.flush()


class SyncOrchestrator:
    """Composes workspace, sessions and stream processing into one run.

    The container runtime is injected, so tests can substitute an in-memory fake.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        settings: OrchestratorSettings | None = None,
        *,
        console: TaggedLineWriter | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self._runtime = runtime
        self._settings = settings or OrchestratorSettings()
        self._console = console or _StdoutWriter()
        self._stderr = stderr

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def check(self, config: RunConfig) -> None:
        """Validate the source connection only (no data movement)."""
        ctx = _RunContext(config)
        self._advance(ctx, RunPhase.VALIDATED)
        await self._runtime.check_available()
        try:
            workspace = self._prepare_workspace(ctx)
            if config.src_pull:
                await self._runtime.pull_image(config.spec_for(Role.SOURCE).image, self._settings.platform)
            await self._check_connection(ctx, workspace)
        except BaseException:
            self._advance(ctx, RunPhase.FAILING)
            raise
        finally:
            await self._cleanup(ctx)

    async def run(self, config: RunConfig) -> SyncResult:
        """Run the sync described by `config`.

        Raises:
            RuntimeUnavailable: Before any resource is created.
            PullFailed, ConnectionCheckFailed, ConnectorFailed: After cleanup.
        """
        started = time.monotonic()
        ctx = _RunContext(config)
        self._advance(ctx, RunPhase.VALIDATED)
        await self._runtime.check_available()

        result = SyncResult(mode=config.mode)
        try:
            workspace = self._prepare_workspace(ctx)
            await self._pull_images(config)
            if config.src_check_connection:
                await self._check_connection(ctx, workspace)

            src_state = StateCollector()
            dst_state = StateCollector()
            match config.mode:
                case RunMode.SOURCE_ONLY:
                    result.stats = await self._run_source_only(ctx, workspace, src_state)
                case RunMode.DESTINATION_ONLY:
                    result.stats = await self._run_destination_only(ctx, workspace, src_state, dst_state)
                case RunMode.SYNC if self._settings.handoff == "streaming":
                    result.stats = await self._run_streaming(ctx, workspace, src_state, dst_state)
                case RunMode.SYNC:
                    result.stats = await self._run_buffered(ctx, workspace, src_state, dst_state)

            # Committed state echoed by the destination wins over what the source emitted
            state = dst_state if dst_state.has_state else src_state
            result.state_persisted = self._reconcile_state(config, state)
            result.state_file = config.resolved_state_file if result.state_persisted else None
            self._advance(ctx, RunPhase.STATE_RECONCILED)
        except BaseException:
            self._advance(ctx, RunPhase.FAILING)
            raise
        finally:
            await self._cleanup(ctx)

        self._advance(ctx, RunPhase.DONE)
        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Sync completed in %.1fs: %d records forwarded",
            result.duration_seconds,
            result.stats.records,
        )
        return result

    # -------------------------------------------------------------------------
    # Preparation
    # -------------------------------------------------------------------------

    def _advance(self, ctx: _RunContext, phase: RunPhase) -> None:
        logger.debug("Run phase: %s -> %s", ctx.phase, phase)
        ctx.phase = phase

    def _prepare_workspace(self, ctx: _RunContext) -> Workspace:
        workspace = Workspace.create(self._settings.workspace_base_dir, self._settings.prefix)
        ctx.workspace = workspace
        workspace.write_config(ctx.config, self._settings.reference_dir)
        workspace.load_state(ctx.config)
        self._advance(ctx, RunPhase.WORKSPACE_READY)
        return workspace

    async def _pull_images(self, config: RunConfig) -> None:
        for role in Role:
            if config.pulls(role):
                await self._runtime.pull_image(config.spec_for(role).image, self._settings.platform)

    async def _check_connection(self, ctx: _RunContext, workspace: Workspace) -> None:
        await check_connection(
            self._runtime,
            ctx.config.spec_for(Role.SOURCE),
            workspace_dir=str(workspace.path),
            config_filename=workspace.config_filename(Role.SOURCE),
            log_level=ctx.config.log_level.value,
            platform=self._settings.platform,
        )
        self._advance(ctx, RunPhase.CONNECTION_CHECKED)

    async def _start_session(self, ctx: _RunContext, workspace: Workspace, role: Role) -> ConnectorSession:
        spec = connector_container_spec(
            role,
            ctx.config,
            workspace_dir=str(workspace.path),
            config_filename=workspace.config_filename(role),
            catalog_filename=workspace.catalog_filename(role),
            state_filename=workspace.state_file.name,
            platform=self._settings.platform,
        )
        session = ConnectorSession(
            self._runtime, role, spec, cid_file=workspace.cid_file(role), stderr=self._stderr
        )
        # Tracked before start so a half-started container is still cleaned up
        ctx.sessions.append(session)
        await session.start()
        return session

    def _processor(self, config: RunConfig, state: StateCollector, *, to_destination: bool) -> StreamProcessor:
        return StreamProcessor(
            raw_messages=config.raw_messages,
            stream_prefix=config.dst_stream_prefix if to_destination else None,
            state=state,
            forward_state=to_destination,
        )

    # -------------------------------------------------------------------------
    # Modes
    # -------------------------------------------------------------------------

    async def _run_source_only(
        self, ctx: _RunContext, workspace: Workspace, src_state: StateCollector
    ) -> StreamStats:
        target = ctx.config.output_target
        if target == STDOUT:
            return await self._read_source(ctx, workspace, src_state, TerminalSink(self._console))
        logger.info("Writing source output to %s", target)
        async with FileSink(Path(target)) as sink:
            return await self._read_source(ctx, workspace, src_state, sink)

    async def _read_source(
        self, ctx: _RunContext, workspace: Workspace, src_state: StateCollector, sink: OutputSink
    ) -> StreamStats:
        source = await self._start_session(ctx, workspace, Role.SOURCE)
        self._advance(ctx, RunPhase.SOURCE_RUNNING)
        processor = self._processor(ctx.config, src_state, to_destination=False)
        self._advance(ctx, RunPhase.PIPING)
        stats = await processor.run(source.output(), sink)
        await source.wait()
        return stats

    async def _run_buffered(
        self,
        ctx: _RunContext,
        workspace: Workspace,
        src_state: StateCollector,
        dst_state: StateCollector,
    ) -> StreamStats:
        """Source output is filtered into a spool file, then fed to the destination."""
        source = await self._start_session(ctx, workspace, Role.SOURCE)
        self._advance(ctx, RunPhase.SOURCE_RUNNING)
        processor = self._processor(ctx.config, src_state, to_destination=True)
        self._advance(ctx, RunPhase.PIPING)
        async with FileSink(workspace.src_output_file) as spool:
            stats = await processor.run(source.output(), spool)
        await source.wait()

        destination = await self._start_session(ctx, workspace, Role.DESTINATION)
        self._advance(ctx, RunPhase.DESTINATION_RUNNING)
        await self._drive_destination(
            destination, self._feed(destination, iter_file_chunks(workspace.src_output_file)), dst_state
        )
        return stats

    async def _run_streaming(
        self,
        ctx: _RunContext,
        workspace: Workspace,
        src_state: StateCollector,
        dst_state: StateCollector,
    ) -> StreamStats:
        """Destination consumes while the source produces; its stdin is the only buffer."""
        destination = await self._start_session(ctx, workspace, Role.DESTINATION)
        source = await self._start_session(ctx, workspace, Role.SOURCE)
        self._advance(ctx, RunPhase.SOURCE_RUNNING)
        processor = self._processor(ctx.config, src_state, to_destination=True)
        sink = SessionSink(destination)

        async def pipe() -> StreamStats:
            self._advance(ctx, RunPhase.PIPING)
            stats = await processor.run(source.output(), sink, close_sink=False)
            await source.wait()
            # End-of-input only once the source exited and everything was written
            await sink.close()
            self._advance(ctx, RunPhase.DESTINATION_RUNNING)
            return stats

        return await self._drive_destination(destination, pipe(), dst_state)

    async def _run_destination_only(
        self,
        ctx: _RunContext,
        workspace: Workspace,
        src_state: StateCollector,
        dst_state: StateCollector,
    ) -> StreamStats:
        input_file = ctx.config.dst_only_input_file
        assert input_file is not None
        logger.info("Reading destination input from %s", input_file)

        destination = await self._start_session(ctx, workspace, Role.DESTINATION)
        self._advance(ctx, RunPhase.DESTINATION_RUNNING)
        processor = self._processor(ctx.config, src_state, to_destination=True)
        self._advance(ctx, RunPhase.PIPING)
        return await self._drive_destination(
            destination, processor.run(iter_file_chunks(input_file), SessionSink(destination)), dst_state
        )

    async def _feed(self, destination: ConnectorSession, chunks: AsyncIterable[bytes]) -> None:
        async for chunk in chunks:
            await destination.write(chunk)
        await destination.close_input()

    async def _drive_destination(
        self,
        destination: ConnectorSession,
        feed: Awaitable[T],
        dst_state: StateCollector,
    ) -> T:
        """Run `feed` (which writes the destination's stdin) while draining its stdout."""
        reader = asyncio.create_task(
            consume_destination_output(destination.output(), dst_state), name="dst-stdout"
        )
        try:
            try:
                result = await feed
            except ConnectorInputClosed as e:
                # The destination stopped reading; its exit code says why
                logger.debug("Destination input closed early: %s", e.message)
                await destination.wait()
                raise
            await reader
            await destination.wait()
            return result
        finally:
            if not reader.done():
                reader.cancel()

    # -------------------------------------------------------------------------
    # State and cleanup
    # -------------------------------------------------------------------------

    def _reconcile_state(self, config: RunConfig, state: StateCollector) -> bool:
        if config.full_refresh:
            logger.info("Full refresh: state file left untouched")
            return False
        if not state.has_state:
            logger.info("No state message captured; state file left untouched")
            return False
        try:
            persist_state(config.resolved_state_file, state.snapshot())
        except StatePersistError as e:
            # Data already moved; an unpersisted state is a warning, not a failure
            logger.warning("%s", e.message)
            return False
        return True

    async def _cleanup(self, ctx: _RunContext) -> None:
        config = ctx.config
        started = [
            s for s in ctx.sessions if s.container_id is not None and s.state is not SessionState.REMOVED
        ]

        if config.keep_containers:
            live = [s.container_id for s in started if s.state is not SessionState.EXITED]
            if live and ctx.phase is RunPhase.FAILING:
                await self._runtime.stop_all(live, timeout=self._settings.stop_timeout)
            for session in started:
                logger.info("Keeping %s container %s", session.role, session.container_id)
        elif started:
            await self._runtime.stop_all(
                [s.container_id for s in started if s.container_id is not None],
                timeout=self._settings.stop_timeout,
            )
            for session in started:
                try:
                    await session.remove()
                except (AirlocalError, OSError) as e:
                    logger.warning("Failed to remove %s container %s: %s", session.role, session.container_id, e)

        workspace = ctx.workspace
        if workspace is not None:
            if config.keep_containers or config.debug:
                logger.info("Keeping workspace %s", workspace.path)
            else:
                try:
                    workspace.remove()
                except AirlocalError as e:
                    logger.warning("%s", e.message)

        self._advance(ctx, RunPhase.CLEANED_UP)
