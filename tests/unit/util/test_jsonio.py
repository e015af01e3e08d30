"""Tests for JSON file helpers."""

import codecs
import json
from pathlib import Path

from airlocal.util.jsonio import decode_text, read_json_file, write_json_atomic, write_json_file


class TestDecodeText:
    def test_plain_utf8(self):
        assert decode_text('{"ü": 1}'.encode()) == '{"ü": 1}'

    def test_utf8_bom_stripped(self):
        assert decode_text(codecs.BOM_UTF8 + b"{}") == "{}"

    def test_utf16_little_endian(self):
        assert decode_text('{"a": 1}'.encode("utf-16")) == '{"a": 1}'

    def test_utf16_big_endian(self):
        assert decode_text(codecs.BOM_UTF16_BE + '{"a": 1}'.encode("utf-16-be")) == '{"a": 1}'


class TestReadWrite:
    def test_crlf_file(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_bytes(b'{\r\n  "src": {"image": "a:1"}\r\n}\r\n')
        assert read_json_file(path) == {"src": {"image": "a:1"}}

    def test_pretty_utf8_output(self, tmp_path: Path):
        path = tmp_path / "out.json"
        write_json_file(path, {"name": "Zoë", "n": [1, 2]})
        text = path.read_text(encoding="utf-8")
        assert "Zoë" in text
        assert text.startswith('{\n  "name"')

    def test_atomic_write_creates_parent(self, tmp_path: Path):
        path = tmp_path / "nested" / "state.json"
        write_json_atomic(path, {"cursor": 1})
        assert json.loads(path.read_text()) == {"cursor": 1}
        assert [p.name for p in path.parent.iterdir()] == ["state.json"]
