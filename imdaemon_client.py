#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.10"
# dependencies = ["pyyaml", "pygments"]
# ///
"""
im-daemon - client

Talks to imdaemon_server.py over its Unix socket.

Usage:
    ./imdaemon_client.py get                           # Print current id
    ./imdaemon_client.py set com.apple.keylayout.ABC   # Select an id
    ./imdaemon_client.py subscribe                     # One id per line
    ./imdaemon_client.py subscribe --jsonl | jq .value # As events

You don't need this script; socat works too:
    echo subscribe | socat - UNIX-CONNECT:$XDG_RUNTIME_DIR/im-daemon.sock
"""

from __future__ import annotations

import argparse
import socket
import sys
from typing import Iterator

from imdaemon_output import format_event, make_event
from imdaemon_server import ENV_SOCKET, get_socket_path


def connect(socket_path: str, timeout: float | None = 5.0) -> socket.socket:
    """Open a stream connection to the daemon."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(socket_path)
    except OSError:
        sock.close()
        raise
    return sock


def request(socket_path: str, command: str, timeout: float = 5.0) -> str:
    """Send one command and return the whole response (read until EOF)."""
    sock = connect(socket_path, timeout)
    try:
        sock.sendall(command.encode() + b"\n")
        chunks: list[bytes] = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    finally:
        sock.close()
    return b"".join(chunks).decode("utf-8", errors="replace")


def iter_updates(socket_path: str, timeout: float | None = None) -> Iterator[str]:
    """Subscribe and yield each pushed id, starting with the current one.

    Stops when the daemon closes the connection.
    """
    sock = connect(socket_path, timeout)
    try:
        sock.sendall(b"subscribe\n")
        buf = b""
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            buf += chunk
            while b"\n" in buf:
                line, buf = buf.split(b"\n", 1)
                yield line.decode("utf-8", errors="replace")
    finally:
        sock.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="im-daemon client - get, set or follow the current input source",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""\
Examples:
    ./imdaemon_client.py get
    ./imdaemon_client.py set com.apple.keylayout.US
    ./imdaemon_client.py subscribe --pretty-yaml

Socket precedence: --socket > ${ENV_SOCKET} > $XDG_RUNTIME_DIR/im-daemon.sock
        """,
    )
    parser.add_argument(
        "--socket",
        type=str,
        default=None,
        help=f"Socket path (default: ${ENV_SOCKET} or runtime dir)",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("get", help="Print the current input source id")
    set_parser = sub.add_parser("set", help="Select an input source id")
    set_parser.add_argument("identifier")
    follow = sub.add_parser("subscribe", help="Print the id now and on every change")
    fmt = follow.add_mutually_exclusive_group()
    fmt.add_argument("--jsonl", action="store_true", default=False,
                     help="Print each update as a compact JSON event")
    fmt.add_argument("--pretty-json", action="store_true", default=False)
    fmt.add_argument("--pretty-yaml", action="store_true", default=False)
    return parser.parse_args(argv)


def _follow(socket_path: str, mode: str | None) -> None:
    tty = sys.stdout.isatty()
    for value in iter_updates(socket_path):
        if mode is None:
            sys.stdout.write(value + "\n")
        else:
            sys.stdout.write(format_event(make_event("change", value=value), mode, tty))
        sys.stdout.flush()


def main(argv: list[str] | None = None) -> None:
    """Run one client command."""
    args = parse_args(argv)
    socket_path = get_socket_path(args.socket)

    try:
        if args.command == "get":
            sys.stdout.write(request(socket_path, "get") + "\n")
        elif args.command == "set":
            response = request(socket_path, f"set {args.identifier}")
            sys.stdout.write(response + "\n")
            if response != "ok":
                sys.exit(1)
        else:
            mode = None
            if args.pretty_yaml:
                mode = "pretty-yaml"
            elif args.pretty_json:
                mode = "pretty-json"
            elif args.jsonl:
                mode = "jsonl"
            try:
                _follow(socket_path, mode)
            except (KeyboardInterrupt, BrokenPipeError):
                pass
    except (FileNotFoundError, ConnectionRefusedError) as e:
        sys.stderr.write(f"Cannot connect to {socket_path}: {e}\n")
        sys.stderr.write("Is imdaemon_server.py running?\n")
        sys.exit(1)
    except OSError as e:
        sys.stderr.write(f"Request failed: {e}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
