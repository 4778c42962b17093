#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.10"
# dependencies = ["pytest", "pyyaml", "pygments"]
# ///
"""
im-daemon - client and output format tests

Usage:
    uv run --script test_imdaemon_client.py -v
"""

from __future__ import annotations

import io
import json
import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.dirname(__file__))
from conftest import INITIAL_LAYOUT, Daemon, make_temp_socket_path
from imdaemon_client import iter_updates, main, request
from imdaemon_output import EventWriter, format_event, get_timestamp, make_event


class TestOutputFormat:
    """Event record formatting."""

    def test_make_event_metadata(self) -> None:
        event = make_event("change", value="A")
        assert event["_event"] == "change"
        assert event["value"] == "A"
        assert "+00:00" in event["_ts"]

    def test_timestamp_is_utc_iso(self) -> None:
        assert get_timestamp().endswith("+00:00")

    def test_jsonl_is_single_compact_line(self) -> None:
        output = format_event({"a": 1, "b": "x"})
        assert output.count("\n") == 1
        assert " " not in output.strip()
        assert json.loads(output) == {"a": 1, "b": "x"}

    def test_pretty_json_is_indented(self) -> None:
        output = format_event({"a": 1}, "pretty-json")
        assert output == '{\n  "a": 1\n}\n'

    def test_pretty_yaml_plain(self) -> None:
        output = format_event({"value": "com.example.A"}, "pretty-yaml")
        assert output == "---\nvalue: com.example.A\n"

    def test_pretty_yaml_multiline_block_scalar(self) -> None:
        output = format_event({"note": "a\nb"}, "pretty-yaml")
        assert "note: |" in output

    def test_pretty_yaml_highlighted_on_tty(self) -> None:
        output = format_event({"value": "A"}, "pretty-yaml", tty=True)
        assert "\033[" in output

    def test_writer_rejects_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            EventWriter("xml")

    def test_disabled_writer_is_silent(self) -> None:
        stream = io.StringIO()
        EventWriter(stream=stream, enabled=False).emit("change", value="A")
        assert stream.getvalue() == ""

    def test_writer_serializes_threads(self) -> None:
        stream = io.StringIO()
        writer = EventWriter(stream=stream)

        def emit_many() -> None:
            for i in range(100):
                writer.emit("change", value=str(i))

        threads = [threading.Thread(target=emit_many) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        lines = stream.getvalue().splitlines()
        assert len(lines) == 400
        assert all(json.loads(line)["_event"] == "change" for line in lines)


class TestClientFunctions:
    """request() and iter_updates() against a live server."""

    def test_request_get(self, daemon: Daemon) -> None:
        assert request(daemon.path, "get") == INITIAL_LAYOUT

    def test_request_set(self, daemon: Daemon) -> None:
        assert request(daemon.path, "set com.example.layoutB") == "ok"
        assert daemon.provider.get_current_value() == "com.example.layoutB"

    def test_iter_updates(self, daemon: Daemon) -> None:
        updates = iter_updates(daemon.path, timeout=5.0)
        assert next(updates) == INITIAL_LAYOUT
        daemon.provider.change("com.example.layoutC")
        assert next(updates) == "com.example.layoutC"
        updates.close()

    def test_iter_updates_ends_when_server_drops(self, daemon: Daemon) -> None:
        updates = iter_updates(daemon.path, timeout=5.0)
        assert next(updates) == INITIAL_LAYOUT
        daemon.server.registry.close_all()
        assert list(updates) == []


class TestClientMain:
    """The command-line entry point."""

    def test_get(self, daemon: Daemon, capsys: pytest.CaptureFixture[str]) -> None:
        main(["--socket", daemon.path, "get"])
        assert capsys.readouterr().out == INITIAL_LAYOUT + "\n"

    def test_set_ok(self, daemon: Daemon, capsys: pytest.CaptureFixture[str]) -> None:
        main(["--socket", daemon.path, "set", "com.example.layoutB"])
        assert capsys.readouterr().out == "ok\n"

    def test_set_error_exits_nonzero(
        self, daemon: Daemon, capsys: pytest.CaptureFixture[str]
    ) -> None:
        daemon.server.provider = type(daemon.provider)("A", allowed={"A"})
        with pytest.raises(SystemExit) as exc:
            main(["--socket", daemon.path, "set", "B"])
        assert exc.value.code == 1
        assert capsys.readouterr().out == "error\n"

    def test_no_server_exits_nonzero(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc:
            main(["--socket", make_temp_socket_path(), "get"])
        assert exc.value.code == 1
        assert "Cannot connect" in capsys.readouterr().err

    def test_subscribe_jsonl(self, daemon: Daemon, capsys: pytest.CaptureFixture[str]) -> None:
        # Drop the subscriber shortly after it registers so main() returns
        def hang_up() -> None:
            while len(daemon.server.registry) == 0:
                threading.Event().wait(0.01)
            daemon.provider.change("com.example.layoutC")
            daemon.server.registry.close_all()

        closer = threading.Thread(target=hang_up, daemon=True)
        closer.start()
        main(["--socket", daemon.path, "subscribe", "--jsonl"])
        closer.join(timeout=5)

        records = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
        assert [r["value"] for r in records] == [INITIAL_LAYOUT, "com.example.layoutC"]
        assert all(r["_event"] == "change" for r in records)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
