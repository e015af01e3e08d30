"""Protocol messages exchanged over connector stdout."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class MessageType(StrEnum):
    RECORD = "RECORD"
    STATE = "STATE"
    LOG = "LOG"
    TRACE = "TRACE"
    CATALOG = "CATALOG"
    CONNECTION_STATUS = "CONNECTION_STATUS"
    SPEC = "SPEC"


# Types passed on to the destination (or output target) when not in raw mode
FORWARDED_TYPES = frozenset({MessageType.RECORD, MessageType.STATE, MessageType.TRACE})


class ConnectionStatus(StrEnum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ProtocolMessage:
    """A single parsed line of the wire protocol."""

    type: MessageType
    body: dict[str, Any]
    raw: bytes  # the line as received, without the newline

    @property
    def record_stream(self) -> str | None:
        record = self.body.get("record")
        if isinstance(record, dict):
            stream = record.get("stream")
            return stream if isinstance(stream, str) else None
        return None

    @property
    def state(self) -> dict[str, Any] | None:
        state = self.body.get("state")
        return state if isinstance(state, dict) else None

    @property
    def connection_status(self) -> tuple[str | None, str | None]:
        """(status, message) of a CONNECTION_STATUS message."""
        payload = self.body.get("connectionStatus")
        if not isinstance(payload, dict):
            return None, None
        return payload.get("status"), payload.get("message")

    @property
    def log(self) -> tuple[str, str]:
        """(level, message) of a LOG message."""
        payload = self.body.get("log")
        if not isinstance(payload, dict):
            return "INFO", ""
        return str(payload.get("level", "INFO")), str(payload.get("message", ""))
