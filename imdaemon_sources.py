"""
im-daemon - input source providers and change signals

The daemon core talks to two collaborators:

    provider   get_current_value() -> str    (never raises, "unknown" on failure)
               set_value(identifier) -> bool
    signals    register_change_callback(fn)  fn() may fire spuriously,
                                             concurrently, at least once per change

MemoryProvider is both at once and is what tests and demos use.
CommandProvider drives a platform tool (macism, xkb-switch, fcitx5-remote,
ibus) and is paired with PollingSignalSource, since shell tools have no
change notification of their own.
"""

from __future__ import annotations

import subprocess
import sys
import threading
from typing import Callable, Iterable, Sequence

UNKNOWN = "unknown"

ChangeCallback = Callable[[], None]

# name -> (get command, set command); the identifier is appended to the set command
COMMAND_PRESETS: dict[str, tuple[list[str], list[str]]] = {
    "macism": (["macism"], ["macism"]),
    "xkb-switch": (["xkb-switch", "-p"], ["xkb-switch", "-s"]),
    "fcitx5": (["fcitx5-remote", "-n"], ["fcitx5-remote", "-s"]),
    "ibus": (["ibus", "engine"], ["ibus", "engine"]),
}


def _fire(callbacks: Iterable[ChangeCallback]) -> None:
    """Invoke callbacks, logging (not raising) any failure."""
    for fn in callbacks:
        try:
            fn()
        except Exception as e:
            sys.stderr.write(f"[signal] change callback failed: {e!r}\n")


class MemoryProvider:
    """In-process input source value, with change callbacks.

    Callbacks fire after every accepted set_value(), including ones that
    leave the value unchanged. Receivers must deduplicate.
    """

    def __init__(self, initial: str = UNKNOWN, allowed: Iterable[str] | None = None) -> None:
        self._value = initial
        self._allowed = frozenset(allowed) if allowed is not None else None
        self._lock = threading.Lock()
        self._callbacks: list[ChangeCallback] = []

    def get_current_value(self) -> str:
        with self._lock:
            return self._value

    def set_value(self, identifier: str) -> bool:
        if not identifier:
            return False
        if self._allowed is not None and identifier not in self._allowed:
            return False
        with self._lock:
            self._value = identifier
            callbacks = list(self._callbacks)
        _fire(callbacks)
        return True

    def change(self, identifier: str) -> None:
        """Simulate an external change (user switched layout elsewhere)."""
        with self._lock:
            self._value = identifier
            callbacks = list(self._callbacks)
        _fire(callbacks)

    def register_change_callback(self, fn: ChangeCallback) -> None:
        with self._lock:
            self._callbacks.append(fn)


class CommandProvider:
    """Reads and selects the input source by running an external tool."""

    def __init__(
        self,
        get_command: Sequence[str],
        set_command: Sequence[str],
        timeout: float = 2.0,
    ) -> None:
        if not get_command or not set_command:
            raise ValueError("get_command and set_command must not be empty")
        self.get_command = list(get_command)
        self.set_command = list(set_command)
        self.timeout = timeout

    @classmethod
    def from_preset(cls, name: str, timeout: float = 2.0) -> CommandProvider:
        try:
            get_command, set_command = COMMAND_PRESETS[name]
        except KeyError:
            raise ValueError(f"unknown provider preset: {name!r}") from None
        return cls(get_command, set_command, timeout=timeout)

    def _run(self, argv: list[str]) -> subprocess.CompletedProcess[str] | None:
        try:
            return subprocess.run(
                argv,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            sys.stderr.write(f"[provider] {argv[0]} failed: {e}\n")
            return None

    def get_current_value(self) -> str:
        result = self._run(self.get_command)
        if result is None or result.returncode != 0:
            return UNKNOWN
        value = result.stdout.strip()
        return value or UNKNOWN

    def set_value(self, identifier: str) -> bool:
        if not identifier:
            return False
        result = self._run(self.set_command + [identifier])
        return result is not None and result.returncode == 0


class PollingSignalSource:
    """Fires registered callbacks every `interval` seconds on a daemon thread.

    Every tick is a possibly-spurious change signal; the notifier compares
    against the last broadcast value and drops the ones that changed nothing.
    """

    def __init__(self, interval: float = 0.5) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._callbacks: list[ChangeCallback] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def register_change_callback(self, fn: ChangeCallback) -> None:
        with self._lock:
            self._callbacks.append(fn)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="imdaemon-poll", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            with self._lock:
                callbacks = list(self._callbacks)
            _fire(callbacks)
