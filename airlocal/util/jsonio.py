"""JSON file helpers shared by config, workspace and state handling."""

import codecs
import json
import os
import tempfile
from pathlib import Path
from typing import Any

_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


def decode_text(data: bytes) -> str:
    """Decode file bytes, honouring UTF-8/UTF-16 byte order marks."""
    for bom, encoding in _BOMS:
        if data.startswith(bom):
            return data.decode(encoding)
    return data.decode("utf-8")


def read_json_file(path: Path) -> Any:
    """Read a JSON document written on any platform (BOMs, UTF-16, CRLF)."""
    return json.loads(decode_text(path.read_bytes()))


def dump_pretty(obj: Any) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False)


def write_json_file(path: Path, obj: Any) -> None:
    """Write pretty-printed UTF-8 JSON."""
    path.write_text(dump_pretty(obj), encoding="utf-8")


def write_json_atomic(path: Path, obj: Any) -> None:
    """Write JSON to a temp file beside `path`, then rename it into place."""
    directory = path.parent if str(path.parent) else Path(".")
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(dump_pretty(obj))
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
