"""Shared fixtures: a live daemon on a temporary Unix socket."""

from __future__ import annotations

import os
import socket
import sys
import tempfile
import time
from threading import Thread
from typing import Generator, NamedTuple

import pytest

sys.path.insert(0, os.path.dirname(__file__))
from imdaemon_server import ChangeNotifier, InputSourceServer
from imdaemon_sources import MemoryProvider

INITIAL_LAYOUT = "com.example.layoutA"


def make_temp_socket_path() -> str:
    """Create a temporary path for a Unix socket.

    We use tempfile.mktemp (not mkstemp) because we need a path that
    doesn't exist yet - the socket will be created by the server.
    """
    return tempfile.mktemp(suffix=".sock", prefix="test-imdaemon-")


def send_command(path: str, command: bytes, timeout: float = 5.0) -> bytes:
    """Send raw bytes on a fresh connection and read until the server closes."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    sock.connect(path)
    try:
        if command:
            sock.sendall(command)
        else:
            sock.shutdown(socket.SHUT_WR)
        response = b""
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            response += chunk
        return response
    finally:
        sock.close()


def connect_subscriber(path: str) -> socket.socket:
    """Connect and send `subscribe`; the greeting is left unread."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(5.0)
    sock.connect(path)
    sock.sendall(b"subscribe\n")
    return sock


def recv_lines(sock: socket.socket, count: int, timeout: float = 5.0) -> list[str]:
    """Receive exactly `count` newline-terminated lines from a socket."""
    buf = b""
    lines: list[str] = []
    deadline = time.monotonic() + timeout
    while len(lines) < count and time.monotonic() < deadline:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        sock.settimeout(remaining)
        try:
            chunk = sock.recv(65536)
        except socket.timeout:
            break
        if not chunk:
            break
        buf += chunk
        while b"\n" in buf:
            line, buf = buf.split(b"\n", 1)
            lines.append(line.decode())
    return lines


def assert_no_more_data(sock: socket.socket, wait: float = 0.2) -> None:
    """Nothing further arrives within `wait` seconds."""
    sock.settimeout(wait)
    try:
        data = sock.recv(4096)
    except socket.timeout:
        return
    pytest.fail(f"unexpected data: {data!r}")


class Daemon(NamedTuple):
    server: InputSourceServer
    provider: MemoryProvider
    path: str


@pytest.fixture
def daemon() -> Generator[Daemon, None, None]:
    """Run a server with a memory provider on a background thread."""
    path = make_temp_socket_path()
    provider = MemoryProvider(INITIAL_LAYOUT)
    srv = InputSourceServer(path, provider)
    notifier = ChangeNotifier(provider, srv.registry, srv.events)
    notifier.prime()
    provider.register_change_callback(notifier)
    thread = Thread(target=srv.serve_forever, kwargs={"poll_interval": 0.05})
    thread.daemon = True
    thread.start()
    yield Daemon(srv, provider, path)
    srv.shutdown()
    srv.server_close()
