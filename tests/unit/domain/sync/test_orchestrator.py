"""Unit tests for SyncOrchestrator — modes, state reconciliation and cleanup."""

import asyncio
import io
import json
from pathlib import Path

import pytest

from airlocal.domain.shared.error import (
    ConfigInvalid,
    ConnectionCheckFailed,
    ConnectorFailed,
    OutputWriteFailed,
    PullFailed,
    RuntimeUnavailable,
    StatePersistError,
)
from airlocal.domain.sync.model.run_config import ConnectorSpec, RunConfig, RunMode
from airlocal.domain.sync.service import orchestrator as orchestrator_module
from airlocal.domain.sync.service.orchestrator import OrchestratorSettings, SyncOrchestrator

SRC = "example/source-users:1.0"
DST = "example/destination-jsonl:1.0"

RECORD = b'{"type":"RECORD","record":{"stream":"users","data":{"id":1},"emitted_at":1}}'
RECORD_2 = b'{"type":"RECORD","record":{"stream":"users","data":{"id":2},"emitted_at":2}}'
STATE = b'{"type":"STATE","state":{"cursor":1}}'
DST_STATE = b'{"type":"STATE","state":{"cursor":2}}'
LOG = b'{"type":"LOG","log":{"level":"INFO","message":"reading users"}}'


def _make_orchestrator(runtime, tmp_path: Path, **settings) -> SyncOrchestrator:
    return SyncOrchestrator(
        runtime,
        OrchestratorSettings(
            workspace_base_dir=tmp_path / "workspaces",
            reference_dir=tmp_path,
            **settings,
        ),
        stderr=io.BytesIO(),
    )


def _state_file(tmp_path: Path, content: object = None) -> Path:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({} if content is None else content))
    return path


def _sync_config(tmp_path: Path, **overrides) -> RunConfig:
    values = {
        "src": ConnectorSpec(image=SRC, config={"token": "abc"}),
        "dst": ConnectorSpec(image=DST, config={"path": "/out"}),
    }
    values.update(overrides)
    if "state_file" not in values:
        values["state_file"] = _state_file(tmp_path)
    return RunConfig(**values)


def _workspaces(tmp_path: Path) -> list[Path]:
    base = tmp_path / "workspaces"
    return list(base.iterdir()) if base.exists() else []


class TestSourceOnly:
    @pytest.mark.asyncio
    async def test_file_output_contains_only_record_and_state_is_persisted(self, runtime, tmp_path: Path):
        # Lines arrive split across chunk boundaries
        runtime.script(SRC, stdout=[RECORD[:20], RECORD[20:] + b"\n" + STATE[:7], STATE[7:] + b"\n"])
        output = tmp_path / "out.jsonl"
        config = _sync_config(tmp_path, dst=None, src_output_file=str(output))

        result = await _make_orchestrator(runtime, tmp_path).run(config)

        assert result.mode is RunMode.SOURCE_ONLY
        assert output.read_bytes() == RECORD + b"\n"
        assert json.loads((tmp_path / "state.json").read_text()) == {"cursor": 1}
        assert result.state_persisted is True

    @pytest.mark.asyncio
    async def test_raw_messages_forward_both_lines_verbatim(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n", STATE + b"\n"])
        output = tmp_path / "out.jsonl"
        config = _sync_config(tmp_path, dst=None, src_output_file=str(output), raw_messages=True)

        await _make_orchestrator(runtime, tmp_path).run(config)

        assert output.read_bytes() == RECORD + b"\n" + STATE + b"\n"

    @pytest.mark.asyncio
    async def test_malformed_line_is_dropped_without_aborting(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\nnot-json\n" + RECORD_2 + b"\n"])
        output = tmp_path / "out.jsonl"
        config = _sync_config(tmp_path, dst=None, src_output_file=str(output))

        result = await _make_orchestrator(runtime, tmp_path).run(config)

        assert output.read_bytes() == RECORD + b"\n" + RECORD_2 + b"\n"
        assert result.stats.dropped == 1
        assert result.stats.records == 2

    @pytest.mark.asyncio
    async def test_terminal_output_is_framed(self, runtime, tmp_path: Path):
        class Recorder:
            def __init__(self):
                self.lines = []

            def tagged_line(self, tag, timestamp, text):
                self.lines.append((tag, text))

        console = Recorder()
        runtime.script(SRC, stdout=[LOG + b"\n" + RECORD + b"\n"])
        config = _sync_config(tmp_path, dst=None, src_only=True, src_output_file="-")
        orchestrator = SyncOrchestrator(
            runtime,
            OrchestratorSettings(workspace_base_dir=tmp_path / "workspaces", reference_dir=tmp_path),
            console=console,
            stderr=io.BytesIO(),
        )

        await orchestrator.run(config)

        assert console.lines == [("SRC", RECORD.decode())]

    @pytest.mark.asyncio
    async def test_destination_is_never_pulled_or_started(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n"])
        config = _sync_config(tmp_path, src_output_file=str(tmp_path / "out.jsonl"))

        await _make_orchestrator(runtime, tmp_path).run(config)

        assert runtime.pulled == [SRC]
        assert [c.spec.image for c in runtime.containers.values()] == [SRC]


class TestSync:
    @pytest.mark.asyncio
    async def test_buffered_handoff_feeds_destination_after_source(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[LOG + b"\n", RECORD + b"\n", STATE + b"\n"])
        runtime.script(DST, stdout=[DST_STATE + b"\n"])

        result = await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        destination = runtime.by_image(DST)
        assert bytes(destination.stdin) == RECORD + b"\n" + STATE + b"\n"
        assert destination.stdin_closed.is_set()
        assert destination.spec.command[0] == "write"
        assert runtime.by_image(SRC).spec.command[0] == "read"
        assert result.stats.records == 1
        # Committed destination state wins over the source's
        assert json.loads((tmp_path / "state.json").read_text()) == {"cursor": 2}

    @pytest.mark.asyncio
    async def test_streaming_handoff_starts_destination_first(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n", STATE + b"\n"])

        await _make_orchestrator(runtime, tmp_path, handoff="streaming").run(_sync_config(tmp_path))

        images = [c.spec.image for c in runtime.containers.values()]
        assert images == [DST, SRC]
        assert bytes(runtime.by_image(DST).stdin) == RECORD + b"\n" + STATE + b"\n"
        assert json.loads((tmp_path / "state.json").read_text()) == {"cursor": 1}

    @pytest.mark.asyncio
    async def test_stream_prefix_rewrites_record_streams(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n"])

        await _make_orchestrator(runtime, tmp_path).run(
            _sync_config(tmp_path, dst_stream_prefix="crm_")
        )

        forwarded = json.loads(bytes(runtime.by_image(DST).stdin))
        assert forwarded["record"]["stream"] == "crm_users"

    @pytest.mark.asyncio
    async def test_pulls_both_images_before_running(self, runtime, tmp_path: Path):
        await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        assert runtime.pulled == [SRC, DST]

    @pytest.mark.asyncio
    async def test_pull_disabled_for_source(self, runtime, tmp_path: Path):
        await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path, src_pull=False))

        assert runtime.pulled == [DST]

    @pytest.mark.asyncio
    async def test_successful_run_removes_containers_and_workspace(self, runtime, tmp_path: Path):
        await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        assert sorted(runtime.removed) == sorted(runtime.containers)
        assert _workspaces(tmp_path) == []

    @pytest.mark.asyncio
    async def test_workspace_is_mounted_and_cid_files_written(self, runtime, tmp_path: Path):
        await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path, keep_containers=True))

        (workspace,) = _workspaces(tmp_path)
        source = runtime.by_image(SRC)
        assert source.spec.binds == [f"{workspace}:/configs:rw"]
        assert (workspace / "src.cid").read_text() == source.id
        assert (workspace / "dst.cid").read_text() == runtime.by_image(DST).id


class TestDestinationOnly:
    @pytest.mark.asyncio
    async def test_input_file_feeds_destination(self, runtime, tmp_path: Path):
        input_file = tmp_path / "input.jsonl"
        input_file.write_bytes(RECORD + b"\nnot-json\n" + STATE + b"\n")
        config = _sync_config(tmp_path, src=None, dst_only_input_file=input_file, src_pull=False)

        result = await _make_orchestrator(runtime, tmp_path).run(config)

        assert result.mode is RunMode.DESTINATION_ONLY
        assert [c.spec.image for c in runtime.containers.values()] == [DST]
        assert runtime.pulled == [DST]
        assert bytes(runtime.by_image(DST).stdin) == RECORD + b"\n" + STATE + b"\n"


class TestState:
    @pytest.mark.asyncio
    async def test_full_refresh_never_reads_or_rewrites_state(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n", STATE + b"\n"])
        state_file = _state_file(tmp_path, {"cursor": 0})
        config = _sync_config(tmp_path, state_file=state_file, full_refresh=True, debug=True)

        result = await _make_orchestrator(runtime, tmp_path).run(config)

        assert json.loads(state_file.read_text()) == {"cursor": 0}
        assert result.state_persisted is False
        # debug keeps the workspace around for inspection
        (workspace,) = _workspaces(tmp_path)
        assert json.loads((workspace / "state.json").read_text()) == {}

    @pytest.mark.asyncio
    async def test_prior_state_is_copied_into_workspace(self, runtime, tmp_path: Path):
        state_file = _state_file(tmp_path, {"cursor": 7})
        config = _sync_config(tmp_path, state_file=state_file, debug=True)

        await _make_orchestrator(runtime, tmp_path).run(config)

        (workspace,) = _workspaces(tmp_path)
        assert json.loads((workspace / "state.json").read_text()) == {"cursor": 7}
        # No STATE message: the state file is left alone
        assert json.loads(state_file.read_text()) == {"cursor": 7}

    @pytest.mark.asyncio
    async def test_missing_explicit_state_file_fails_before_containers(self, runtime, tmp_path: Path):
        config = _sync_config(tmp_path, state_file=tmp_path / "missing.json")

        with pytest.raises(ConfigInvalid, match="not found"):
            await _make_orchestrator(runtime, tmp_path).run(config)

        assert runtime.containers == {}
        assert _workspaces(tmp_path) == []

    @pytest.mark.asyncio
    async def test_persist_failure_is_a_warning(self, runtime, tmp_path: Path, monkeypatch):
        runtime.script(SRC, stdout=[STATE + b"\n"])

        def fail(path, state):
            raise StatePersistError("disk full")

        monkeypatch.setattr(orchestrator_module, "persist_state", fail)

        result = await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        assert result.state_persisted is False
        assert result.state_file is None


class TestFailures:
    @pytest.mark.asyncio
    async def test_destination_failure_cleans_up_everything(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n"])
        runtime.script(DST, exit_code=1)

        with pytest.raises(ConnectorFailed) as exc_info:
            await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        assert exc_info.value.role == "destination"
        assert exc_info.value.exit_code == 1
        started = set(runtime.containers)
        assert len(started) == 2
        assert set(runtime.stop_calls[0]) == started
        assert set(runtime.removed) == started
        assert _workspaces(tmp_path) == []

    @pytest.mark.asyncio
    async def test_source_failure_never_starts_destination(self, runtime, tmp_path: Path):
        runtime.script(SRC, exit_code=3)

        with pytest.raises(ConnectorFailed, match="Failed to run source connector"):
            await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        assert [c.spec.image for c in runtime.containers.values()] == [SRC]
        assert _workspaces(tmp_path) == []

    @pytest.mark.asyncio
    async def test_destination_closing_input_reports_its_exit_code(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n"])
        runtime.script(DST, exit_code=2, reject_input=True)

        with pytest.raises(ConnectorFailed) as exc_info:
            await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        assert exc_info.value.exit_code == 2

    @pytest.mark.asyncio
    async def test_runtime_unavailable_creates_nothing(self, runtime, tmp_path: Path):
        runtime.available = False

        with pytest.raises(RuntimeUnavailable):
            await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        assert not (tmp_path / "workspaces").exists()
        assert runtime.containers == {}

    @pytest.mark.asyncio
    async def test_pull_failure_removes_workspace(self, runtime, tmp_path: Path):
        runtime.pull_failures.add(DST)

        with pytest.raises(PullFailed, match=DST):
            await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path))

        assert runtime.containers == {}
        assert _workspaces(tmp_path) == []

    @pytest.mark.asyncio
    async def test_cancellation_stops_and_removes_containers(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n"], hang=True)
        output = tmp_path / "out.jsonl"
        config = _sync_config(tmp_path, dst=None, src_output_file=str(output))

        task = asyncio.create_task(_make_orchestrator(runtime, tmp_path).run(config))
        await asyncio.wait_for(runtime.reading.wait(), timeout=5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert runtime.stop_calls == [["cid-1"]]
        assert runtime.removed == ["cid-1"]
        assert _workspaces(tmp_path) == []
        # Lines written before the interruption are on disk
        assert output.read_bytes() == RECORD + b"\n"

    @pytest.mark.asyncio
    async def test_unwritable_output_file_cleans_up(self, runtime, tmp_path: Path):
        runtime.script(SRC, stdout=[RECORD + b"\n"])
        output = tmp_path / "missing" / "out.jsonl"
        config = _sync_config(tmp_path, dst=None, src_output_file=str(output))

        with pytest.raises(OutputWriteFailed, match="Cannot write output file"):
            await _make_orchestrator(runtime, tmp_path).run(config)

        assert runtime.removed == ["cid-1"]
        assert _workspaces(tmp_path) == []

    @pytest.mark.asyncio
    async def test_keep_containers_skips_removal(self, runtime, tmp_path: Path):
        runtime.script(DST, exit_code=1)

        with pytest.raises(ConnectorFailed):
            await _make_orchestrator(runtime, tmp_path).run(_sync_config(tmp_path, keep_containers=True))

        assert runtime.removed == []
        assert len(_workspaces(tmp_path)) == 1


class TestConnectionCheck:
    @pytest.mark.asyncio
    async def test_failed_check_aborts_before_sessions(self, runtime, tmp_path: Path):
        runtime.capture_result = (
            0,
            b'{"type":"CONNECTION_STATUS","connectionStatus":{"status":"FAILED","message":"bad token"}}\n',
        )
        config = _sync_config(tmp_path, src_check_connection=True)

        with pytest.raises(ConnectionCheckFailed) as exc_info:
            await _make_orchestrator(runtime, tmp_path).run(config)

        assert exc_info.value.message == "bad token"
        assert runtime.containers == {}
        assert _workspaces(tmp_path) == []

    @pytest.mark.asyncio
    async def test_check_only_runs_check_command(self, runtime, tmp_path: Path):
        runtime.capture_result = (
            0,
            b'{"type":"CONNECTION_STATUS","connectionStatus":{"status":"SUCCEEDED"}}\n',
        )
        config = _sync_config(tmp_path, dst=None, src_only=True, src_output_file="-")

        await _make_orchestrator(runtime, tmp_path).check(config)

        (spec,) = runtime.captured
        assert spec.command == ["check", "--config", "/configs/airlocal_src_config.json"]
        assert runtime.pulled == [SRC]
        assert runtime.containers == {}
        assert _workspaces(tmp_path) == []
