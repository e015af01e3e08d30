"""Protocol stream processing: line reassembly, filtering and forwarding.

Connector stdout arrives as arbitrary byte chunks. `iter_lines` turns them into
whole lines in arrival order, `parse_message` tags each line, and `StreamProcessor`
decides what reaches the output sink (destination stdin, a file or the terminal).

Flow control is the sink's job: `OutputSink.write` may block (a destination that
stops reading stdin), which stalls the read loop. There is no intermediate queue.
"""

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Protocol

from airlocal.domain.shared.error import OutputWriteFailed
from airlocal.domain.sync.model.message import FORWARDED_TYPES, MessageType, ProtocolMessage
from airlocal.domain.sync.service.session import ConnectorSession
from airlocal.domain.sync.service.state import StateCollector

logger = logging.getLogger(__name__)

# Connector log levels -> stdlib levels
_LOG_LEVELS = {
    "FATAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "TRACE": logging.DEBUG,
}


async def iter_lines(chunks: AsyncIterable[bytes], *, raw: bool = False) -> AsyncIterator[bytes]:
    """Reassemble newline-delimited lines split across chunks.

    Strips a trailing carriage return, skips blank lines and flushes a final
    unterminated line at end of stream. With `raw`, only the `\\n` delimiter is
    removed and every line, blank or not, is yielded as received.
    """
    buffer = bytearray()
    async for chunk in chunks:
        if not chunk:
            continue
        start = len(buffer)
        buffer += chunk
        # Only the new bytes can hold a delimiter
        end = buffer.rfind(b"\n", start)
        if end < 0:
            continue
        lines = bytes(buffer[:end]).split(b"\n")
        del buffer[: end + 1]
        for line in lines:
            if raw:
                yield line
                continue
            line = line.rstrip(b"\r")
            if line.strip():
                yield line
    tail = bytes(buffer)
    if raw:
        if tail:
            yield tail
        return
    tail = tail.rstrip(b"\r")
    if tail.strip():
        yield tail


async def iter_file_chunks(path: Path, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    with path.open("rb") as fh:
        while chunk := fh.read(chunk_size):
            yield chunk


def parse_message(line: bytes) -> ProtocolMessage | None:
    """Parse one line; None for non-JSON lines or lines without a known `type`."""
    try:
        body = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(body, dict):
        return None
    try:
        message_type = MessageType(body.get("type"))
    except ValueError:
        return None
    return ProtocolMessage(type=message_type, body=body, raw=line)


def log_connector_message(message: ProtocolMessage, label: str) -> None:
    level, text = message.log
    logger.log(_LOG_LEVELS.get(level.upper(), logging.INFO), "[%s] %s", label, text)


# =============================================================================
# Sinks
# =============================================================================


class OutputSink(Protocol):
    async def write(self, line: bytes) -> None: ...

    async def close(self) -> None: ...


class FileSink:
    """Writes one line per message, byte-identical to the forwarded input.

    Use as an async context manager so the file handle is released on every
    exit path; `close()` marks normal end of output.

    Raises:
        OutputWriteFailed: If the file cannot be opened or written.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fh: IO[bytes] | None = None
        self._closed = False

    async def __aenter__(self) -> "FileSink":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._release()

    def _release(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    async def write(self, line: bytes) -> None:
        try:
            if self._fh is None:
                self._fh = self.path.open("wb")
            self._fh.write(line + b"\n")
        except OSError as e:
            raise OutputWriteFailed(f"Cannot write output file {self.path}: {e.strerror or e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._fh is None:
                # Still produce the (empty) file so consumers find it
                self.path.write_bytes(b"")
                return
            self._fh.flush()
        except OSError as e:
            raise OutputWriteFailed(f"Cannot write output file {self.path}: {e.strerror or e}") from e
        finally:
            self._release()


class TaggedLineWriter(Protocol):
    def tagged_line(self, tag: str, timestamp: str, text: str) -> None: ...


class TerminalSink:
    """Human-readable framing: `[SRC] <timestamp> <message>` on the console."""

    def __init__(self, console: TaggedLineWriter, tag: str = "SRC") -> None:
        self._console = console
        self._tag = tag

    async def write(self, line: bytes) -> None:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        self._console.tagged_line(self._tag, timestamp, line.decode("utf-8", errors="replace"))

    async def close(self) -> None:
        return None


class SessionSink:
    """Feeds the destination session's stdin."""

    def __init__(self, session: ConnectorSession) -> None:
        self._session = session

    async def write(self, line: bytes) -> None:
        await self._session.write(line + b"\n")

    async def close(self) -> None:
        await self._session.close_input()


# =============================================================================
# Processor
# =============================================================================


@dataclass
class StreamStats:
    lines: int = 0
    forwarded: int = 0
    records: int = 0
    states: int = 0
    dropped: int = 0


class StreamProcessor:
    """Filters and forwards one connector's output stream.

    With `raw_messages`, every line goes through untouched. Otherwise only RECORD,
    STATE and TRACE messages are forwarded; LOG messages are echoed to the operator
    log; CONNECTION_STATUS, CATALOG and SPEC are consumed; noise is dropped.
    STATE messages are captured in both modes. With `forward_state=False` (file and
    terminal targets) filtered output carries no STATE lines.
    """

    def __init__(
        self,
        *,
        raw_messages: bool = False,
        stream_prefix: str | None = None,
        state: StateCollector | None = None,
        forward_state: bool = True,
        label: str = "SRC",
    ) -> None:
        self._raw = raw_messages
        self._forward_state = forward_state
        self._prefix = stream_prefix
        self.state = state or StateCollector()
        self._label = label
        self.stats = StreamStats()

    def _rewrite(self, message: ProtocolMessage) -> bytes:
        """Prefix the record's stream name; other messages pass byte-for-byte."""
        stream = message.record_stream
        if not self._prefix or message.type is not MessageType.RECORD or stream is None:
            return message.raw
        body = dict(message.body)
        body["record"] = {**body["record"], "stream": f"{self._prefix}{stream}"}
        return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def transform(self, line: bytes) -> bytes | None:
        """Process one line; returns the bytes to forward, or None to drop it."""
        self.stats.lines += 1
        message = parse_message(line)

        if message is not None and message.type is MessageType.STATE:
            self.state.observe(message)
            self.stats.states += 1

        if self._raw:
            return line

        if message is None:
            logger.debug("[%s] %s", self._label, line.decode("utf-8", errors="replace"))
            self.stats.dropped += 1
            return None
        if message.type is MessageType.LOG:
            log_connector_message(message, self._label)
            return None
        if message.type not in FORWARDED_TYPES:
            logger.debug("[%s] consumed %s message", self._label, message.type)
            return None
        if message.type is MessageType.STATE and not self._forward_state:
            # Captured above; file and terminal targets get the state file instead
            return None

        if message.type is MessageType.RECORD:
            self.stats.records += 1
        return self._rewrite(message)

    async def run(self, chunks: AsyncIterable[bytes], sink: OutputSink, *, close_sink: bool = True) -> StreamStats:
        """Forward `chunks` into `sink` in arrival order.

        The sink is closed after the last line unless `close_sink` is False (the
        caller then closes it, e.g. only once the producing container has exited).
        """
        async for line in iter_lines(chunks, raw=self._raw):
            out = self.transform(line)
            if out is not None:
                await sink.write(out)
                self.stats.forwarded += 1
        if close_sink:
            await sink.close()
        logger.debug("[%s] stream finished: %s", self._label, self.stats)
        return self.stats


async def consume_destination_output(chunks: AsyncIterable[bytes], state: StateCollector) -> None:
    """Drain destination stdout: echo its logs and capture committed STATE messages."""
    async for line in iter_lines(chunks):
        message = parse_message(line)
        if message is None:
            logger.debug("[DST] %s", line.decode("utf-8", errors="replace"))
        elif message.type is MessageType.STATE:
            state.observe(message)
        elif message.type is MessageType.LOG:
            log_connector_message(message, "DST")
        else:
            logger.debug("[DST] %s message", message.type)
