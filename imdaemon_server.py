#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.10"
# dependencies = ["pyyaml", "pygments"]
# ///
"""
im-daemon - input source daemon (Unix socket server)

Exposes the current input source (keyboard layout / input method id) over
a Unix domain socket and pushes every change to subscribed peers.

Protocol (one short line per connection, UTF-8):
    get            -> "<id>"                  then close
    set <id>       -> "ok" | "error"          then close
    subscribe      -> "<id>\\n"               connection stays open; every
                                              later change pushes "<id>\\n"
    anything else  -> "error: unknown command" then close
    empty read     -> close, no response

    echo get | socat - UNIX-CONNECT:$XDG_RUNTIME_DIR/im-daemon.sock

Threads:
    The accept loop (serve_forever) hands each connection to its own daemon
    thread. Change signals arrive on whatever thread the signal source uses.
    The subscriber list and the last broadcast value are the only shared
    state; both live in SubscriberRegistry behind one lock.

Usage:
    ./imdaemon_server.py                              # In-memory provider
    ./imdaemon_server.py --provider macism            # macOS, via macism
    ./imdaemon_server.py --provider xkb-switch        # X11 layouts
    ./imdaemon_server.py --provider command \\
        --get-command 'my-tool get' --set-command 'my-tool set'
    ./imdaemon_server.py --pretty-yaml                # Human-readable events
    IM_DAEMON_SOCKET=/tmp/im.sock ./imdaemon_server.py
"""

from __future__ import annotations

import argparse
import os
import shlex
import signal
import socket
import socketserver
import sys
import threading
import time
from typing import Any

from imdaemon_output import EventWriter
from imdaemon_sources import (
    COMMAND_PRESETS,
    UNKNOWN,
    CommandProvider,
    MemoryProvider,
    PollingSignalSource,
)

SOCKET_NAME = "im-daemon.sock"
ENV_SOCKET = "IM_DAEMON_SOCKET"

# Commands are short single lines; anything longer is truncated
MAX_COMMAND_BYTES = 255
READ_TIMEOUT = 5.0
SUBSCRIBER_SEND_TIMEOUT = 1.0

ACCEPT_BACKOFF_INITIAL = 0.05
ACCEPT_BACKOFF_MAX = 2.0

UNKNOWN_COMMAND = "error: unknown command"


class SubscriberRegistry:
    """Live subscriber connections plus the last value pushed to them.

    One lock guards both the list and the last value. Membership changes,
    the compare-and-set of the last value, and the writes of a broadcast
    all happen inside it, so a broadcast is never observed half done and
    no socket is written by two threads at once.

    Sockets handed to add() belong to the registry from then on: it closes
    them on write failure or in close_all().
    """

    def __init__(self, send_timeout: float | None = SUBSCRIBER_SEND_TIMEOUT) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[socket.socket] = []
        self._last_value: str | None = None
        self._send_timeout = send_timeout

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def last_value(self) -> str | None:
        with self._lock:
            return self._last_value

    def prime(self, value: str) -> None:
        """Set the last broadcast value without broadcasting."""
        with self._lock:
            self._last_value = value

    def add(self, handle: socket.socket, greeting: str | None = None) -> bool:
        """Register a subscriber, optionally sending it a first line.

        The greeting is read by the caller, outside the lock, so it may
        already be stale. If a different value was broadcast since, that
        value follows the greeting, so the subscriber ends up where
        everyone else is. Returns False (and closes the handle) if a
        write fails.
        """
        handle.settimeout(self._send_timeout)
        with self._lock:
            if greeting is not None:
                lines = [greeting]
                if self._last_value is not None and self._last_value != greeting:
                    lines.append(self._last_value)
                try:
                    handle.sendall("".join(line + "\n" for line in lines).encode())
                except OSError:
                    _close_quietly(handle)
                    return False
            if handle not in self._subscribers:
                self._subscribers.append(handle)
            return True

    def broadcast(self, message: bytes) -> int:
        """Write message to every subscriber. Returns the number evicted."""
        with self._lock:
            return self._broadcast_locked(message)

    def publish(self, value: str) -> tuple[bool, int]:
        """Broadcast value + newline if it differs from the last one sent.

        Returns (broadcast happened, subscribers evicted).
        """
        with self._lock:
            if value == self._last_value:
                return False, 0
            self._last_value = value
            return True, self._broadcast_locked((value + "\n").encode())

    def _broadcast_locked(self, message: bytes) -> int:
        dead: list[socket.socket] = []
        for client in self._subscribers:
            try:
                client.sendall(message)
            except OSError:
                # BrokenPipeError, ConnectionResetError, socket.timeout
                dead.append(client)
        for client in dead:
            self._subscribers.remove(client)
            _close_quietly(client)
        return len(dead)

    def close_all(self) -> None:
        """Close and forget every subscriber."""
        with self._lock:
            for client in self._subscribers:
                _close_quietly(client)
            self._subscribers.clear()


def _close_quietly(sock: socket.socket) -> None:
    try:
        sock.close()
    except OSError:
        pass


class ChangeNotifier:
    """Change-signal callback: re-read the provider, push if it changed.

    Signal sources may call this spuriously (a modifier key press, a poll
    tick), concurrently, and more than once per change. The provider read
    happens outside the registry lock; only the compare-and-broadcast is
    serialized.
    """

    def __init__(
        self, provider: Any, registry: SubscriberRegistry, events: EventWriter | None = None
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.events = events

    def prime(self) -> None:
        self.registry.prime(self.provider.get_current_value())

    def __call__(self) -> None:
        try:
            value = self.provider.get_current_value()
        except Exception as e:
            sys.stderr.write(f"[notify] provider read failed: {e!r}\n")
            return
        changed, evicted = self.registry.publish(value)
        if changed and self.events is not None:
            self.events.emit(
                "change", value=value, subscribers=len(self.registry), evicted=evicted
            )


class CommandHandler(socketserver.BaseRequestHandler):
    """Serve one connection: read a command line, answer, close or subscribe."""

    server: InputSourceServer  # type narrowing

    def handle(self) -> None:
        self.request.settimeout(READ_TIMEOUT)
        try:
            raw = self.request.recv(MAX_COMMAND_BYTES)
        except OSError:
            return
        if not raw:
            return

        command = raw.decode("utf-8", errors="replace").strip()
        provider = self.server.provider

        if command == "get":
            self._reply("get", provider.get_current_value())
        elif command.startswith("set "):
            identifier = command[4:]
            response = "ok" if provider.set_value(identifier) else "error"
            self._reply("set", response, identifier=identifier)
        elif command == "subscribe":
            self._subscribe()
        else:
            self._reply("unknown", UNKNOWN_COMMAND)

    def _reply(self, name: str, response: str, **fields: Any) -> None:
        try:
            self.request.sendall(response.encode())
        except OSError:
            pass  # Peer gone; socketserver closes the connection either way
        self.server.events.emit("command", command=name, response=response, **fields)

    def _subscribe(self) -> None:
        # Provider reads can be slow (a subprocess); keep them out of the
        # registry lock.
        value = self.server.provider.get_current_value()
        # socketserver closes self.request once handle() returns; detach the
        # descriptor so the registry alone owns the subscriber connection.
        handle = socket.socket(fileno=self.request.detach())
        registry = self.server.registry
        if registry.add(handle, value):
            self.server.events.emit(
                "command",
                command="subscribe",
                response=value,
                subscribers=len(registry),
            )


class InputSourceServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    """Threaded Unix stream server holding the provider and subscriber registry.

    We override:
    1. server_bind() to clear stale socket files and set permissions
    2. get_request() to log accept failures and back off
    3. server_close() to unlink the socket and close subscribers
    """

    daemon_threads = True
    # Raised from the default 5 so bursts of short requests queue
    request_queue_size = 16

    def __init__(
        self,
        socket_path: str,
        provider: Any,
        mode: int = 0o600,
        events: EventWriter | None = None,
        registry: SubscriberRegistry | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.provider = provider
        self.events = events if events is not None else EventWriter(enabled=False)
        self.registry = registry if registry is not None else SubscriberRegistry()
        self._socket_mode = mode
        self._accept_failures = 0
        # UnixStreamServer.__init__ calls server_bind() and server_activate()
        # and closes the socket itself if either raises
        super().__init__(socket_path, CommandHandler)

    def server_bind(self) -> None:
        """Bind to the socket path, replacing a stale endpoint file."""
        parent = os.path.dirname(self.socket_path)
        if parent:
            os.makedirs(parent, mode=0o700, exist_ok=True)
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)
        self.socket.bind(self.server_address)
        os.chmod(self.socket_path, self._socket_mode)

    def get_request(self) -> tuple[socket.socket, Any]:
        try:
            request = super().get_request()
        except OSError as e:
            # serve_forever() drops the failed accept and keeps looping;
            # we only log it and slow down if failures repeat (EMFILE etc.)
            self._accept_failures += 1
            delay = self.accept_backoff(self._accept_failures)
            sys.stderr.write(
                f"[accept] failed ({e}); retrying in {delay:.2f}s "
                f"(failure #{self._accept_failures})\n"
            )
            time.sleep(delay)
            raise
        self._accept_failures = 0
        return request

    @staticmethod
    def accept_backoff(failures: int) -> float:
        """Delay before the next accept after `failures` consecutive errors."""
        if failures <= 0:
            return 0.0
        return min(ACCEPT_BACKOFF_MAX, ACCEPT_BACKOFF_INITIAL * 2 ** (failures - 1))

    def server_close(self) -> None:
        """Clean up: close socket, remove socket file, drop subscribers."""
        super().server_close()
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)
        self.registry.close_all()


def default_socket_path() -> str:
    """Per-user runtime directory: $XDG_RUNTIME_DIR, else ~/.local/run."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return os.path.join(runtime_dir, SOCKET_NAME)
    return os.path.join(os.path.expanduser("~"), ".local", "run", SOCKET_NAME)


def get_socket_path(cli_path: str | None) -> str:
    """Determine socket path with precedence: CLI > env > runtime dir."""
    if cli_path is not None:
        return cli_path
    env_path = os.environ.get(ENV_SOCKET)
    if env_path:
        return env_path
    return default_socket_path()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="im-daemon - serve and push the current input source over a Unix socket",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
    ./imdaemon_server.py                                   # In-memory provider
    ./imdaemon_server.py --provider xkb-switch             # X11 layouts
    ./imdaemon_server.py --provider command --get-command 'tool get' \\
                         --set-command 'tool set'
    ./imdaemon_server.py --socket /tmp/im.sock --pretty-yaml

Socket precedence: --socket > ${ENV_SOCKET} > $XDG_RUNTIME_DIR/{SOCKET_NAME} > ~/.local/run/{SOCKET_NAME}
        """,
    )
    parser.add_argument(
        "--socket",
        type=str,
        default=None,
        help=f"Socket path to listen on (default: ${ENV_SOCKET} or runtime dir)",
    )
    parser.add_argument(
        "--mode",
        type=lambda x: int(x, 8),
        default=0o600,
        help="Socket file permissions in octal (default: 0600)",
    )
    parser.add_argument(
        "--provider",
        choices=["memory", "command", *COMMAND_PRESETS],
        default="memory",
        help="Where the input source comes from (default: memory)",
    )
    parser.add_argument(
        "--initial",
        type=str,
        default=UNKNOWN,
        help="Starting value for the memory provider",
    )
    parser.add_argument("--get-command", type=str, default=None,
                        help="Command printing the current id (--provider command)")
    parser.add_argument("--set-command", type=str, default=None,
                        help="Command selecting an id, passed as last argument (--provider command)")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=0.5,
        help="Seconds between change checks for command providers (default: 0.5)",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        default=False,
        help="Do not write the event stream to stdout",
    )
    fmt = parser.add_mutually_exclusive_group()
    fmt.add_argument(
        "--pretty-json",
        action="store_true",
        default=False,
        help="Output indented multiline JSON instead of compact JSONL",
    )
    fmt.add_argument(
        "--pretty-yaml",
        action="store_true",
        default=False,
        help="Output YAML instead of compact JSONL",
    )
    return parser.parse_args(argv)


def build_sources(args: argparse.Namespace) -> tuple[Any, Any]:
    """Return (provider, signal source) for the parsed arguments.

    Raises ValueError on an inconsistent configuration.
    """
    if args.provider == "memory":
        provider = MemoryProvider(args.initial)
        return provider, provider

    if args.provider == "command":
        if not args.get_command or not args.set_command:
            raise ValueError("--provider command requires --get-command and --set-command")
        provider = CommandProvider(shlex.split(args.get_command), shlex.split(args.set_command))
    else:
        provider = CommandProvider.from_preset(args.provider)
    return provider, PollingSignalSource(args.poll_interval)


def _raise_keyboard_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def main(argv: list[str] | None = None) -> None:
    """Start the daemon."""
    args = parse_args(argv)
    socket_path = get_socket_path(args.socket)

    mode = "jsonl"
    if args.pretty_yaml:
        mode = "pretty-yaml"
    elif args.pretty_json:
        mode = "pretty-json"

    try:
        provider, signals = build_sources(args)
    except ValueError as e:
        sys.stderr.write(f"Error: {e}\n")
        sys.exit(1)

    # Writes to vanished subscribers must raise BrokenPipeError, not kill us
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)

    events = EventWriter(mode, enabled=not args.quiet)
    try:
        server = InputSourceServer(socket_path, provider, args.mode, events)
    except OSError as e:
        sys.stderr.write(f"Error: cannot listen on {socket_path}: {e}\n")
        sys.exit(1)

    notifier = ChangeNotifier(provider, server.registry, events)
    notifier.prime()
    signals.register_change_callback(notifier)
    if isinstance(signals, PollingSignalSource):
        signals.start()

    sys.stderr.write(f"im-daemon listening on {socket_path}\n")
    sys.stderr.write(f"Socket permissions: {oct(args.mode)}\n")
    sys.stderr.write(f"Provider: {args.provider} (current: {server.registry.last_value})\n")
    sys.stderr.write("Press Ctrl+C to stop\n\n")

    try:
        server.serve_forever(poll_interval=0.1)
    except KeyboardInterrupt:
        sys.stderr.write("\nShutting down...\n")
    finally:
        if isinstance(signals, PollingSignalSource):
            signals.stop(timeout=1.0)
        server.server_close()


if __name__ == "__main__":
    main()
