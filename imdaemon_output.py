"""
im-daemon - event output

Formats daemon events (commands served, changes broadcast) as JSONL,
indented JSON, or YAML and writes them to stdout. Diagnostics never go
through here; they are written straight to stderr by the caller.

Output modes:
    jsonl        one compact JSON object per line (default, pipe into jq)
    pretty-json  indented multiline JSON
    pretty-yaml  YAML documents, syntax-highlighted when stdout is a TTY
"""

from __future__ import annotations

import json
import sys
import threading
from datetime import datetime, timezone
from typing import Any, TextIO

import yaml
from pygments import highlight
from pygments.lexers import YamlLexer
from pygments.formatters import Terminal256Formatter

OUTPUT_MODES = ("jsonl", "pretty-json", "pretty-yaml")


class _MultilineYamlDumper(yaml.SafeDumper):
    """YAML dumper that renders strings containing newlines as block scalars (|)."""
    pass


def _str_representer(dumper: yaml.SafeDumper, data: str) -> yaml.Node:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_MultilineYamlDumper.add_representer(str, _str_representer)


def get_timestamp() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def make_event(event: str, **fields: Any) -> dict[str, Any]:
    """Build an event record. Metadata keys are prefixed with _."""
    result: dict[str, Any] = {
        "_ts": get_timestamp(),
        "_event": event,
    }
    result.update(fields)
    return result


def format_event(data: dict[str, Any], mode: str = "jsonl", tty: bool = False) -> str:
    """Format a single event in the given output mode. Returns string."""
    match mode:
        case "pretty-yaml":
            yaml_text = yaml.dump(
                data, Dumper=_MultilineYamlDumper,
                default_flow_style=False, sort_keys=False,
            )
            if tty:
                return (
                    "\033[90m---\033[0m\n"
                    + highlight(yaml_text, YamlLexer(), Terminal256Formatter())
                )
            else:
                return "---\n" + yaml_text
        case "pretty-json":
            return json.dumps(data, indent=2) + "\n"
        case _:
            return json.dumps(data, separators=(",", ":")) + "\n"


class EventWriter:
    """Writes formatted events to a stream.

    Handler threads, the notifier and the signal source all emit events,
    so each record is written and flushed under a lock to keep records
    from interleaving.
    """

    def __init__(
        self, mode: str = "jsonl", stream: TextIO | None = None, enabled: bool = True
    ) -> None:
        if mode not in OUTPUT_MODES:
            raise ValueError(f"unknown output mode: {mode!r}")
        self.mode = mode
        self.enabled = enabled
        self._stream = stream
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        # Resolved lazily so tests that patch sys.stdout see their stream
        return self._stream if self._stream is not None else sys.stdout

    def emit(self, event: str, **fields: Any) -> None:
        """Format and write one event record."""
        if not self.enabled:
            return
        stream = self.stream
        text = format_event(make_event(event, **fields), self.mode, stream.isatty())
        with self._lock:
            try:
                stream.write(text)
                stream.flush()
            except (BrokenPipeError, ValueError):
                # Reader went away (e.g. `| head`); stop emitting
                self.enabled = False
