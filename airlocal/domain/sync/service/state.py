"""Sync state capture and persistence."""

import logging
from pathlib import Path
from typing import Any

from airlocal.domain.shared.error import ConfigInvalid, StatePersistError
from airlocal.domain.sync.model.message import MessageType, ProtocolMessage
from airlocal.util.jsonio import read_json_file, write_json_atomic

logger = logging.getLogger(__name__)


class StateCollector:
    """Captures STATE messages from a message stream, last write wins.

    Two shapes are understood:
    - per-stream states (`state.type == "STREAM"`), kept per stream descriptor and
      persisted as a list;
    - anything else is a legacy state, persisted as its `data` payload (or the whole
      `state` object when there is no `data`).

    Per-stream states take priority over a legacy state when both were seen.
    """

    def __init__(self) -> None:
        self._streams: dict[tuple[str | None, str], dict[str, Any]] = {}
        self._legacy: Any = None
        self._seen = False

    @property
    def has_state(self) -> bool:
        return self._seen

    def observe(self, message: ProtocolMessage) -> None:
        if message.type is not MessageType.STATE:
            return
        state = message.state
        if state is None:
            logger.debug("Ignoring STATE message without a state object")
            return

        self._seen = True
        if state.get("type") == "STREAM" and isinstance(state.get("stream"), dict):
            descriptor = state["stream"].get("stream_descriptor") or {}
            key = (descriptor.get("namespace"), str(descriptor.get("name", "")))
            self._streams[key] = state
        else:
            self._legacy = state["data"] if "data" in state else state

    def snapshot(self) -> Any:
        """The state to persist, or None when nothing was captured."""
        if self._streams:
            return list(self._streams.values())
        return self._legacy


def load_state(path: Path, *, required: bool) -> Any:
    """Load a prior state file.

    A missing file yields `{}` unless the operator named it explicitly.
    """
    if not path.exists():
        if required:
            raise ConfigInvalid(
                f"State file '{path}' not found. "
                "Please make sure the state file exists and have read access.",
                field="state_file",
            )
        logger.debug("No prior state file at %s, starting from empty state", path)
        return {}
    try:
        state = read_json_file(path)
    except (OSError, ValueError) as e:
        raise ConfigInvalid(f"Failed to read state file '{path}': {e}", field="state_file")
    logger.info("Loaded state from %s", path)
    return state


def persist_state(path: Path, state: Any) -> None:
    """Atomically replace the state file with `state`."""
    try:
        write_json_atomic(path, state)
    except OSError as e:
        raise StatePersistError(f"Failed to write state file '{path}': {e}") from e
    logger.info("State written to %s", path)
