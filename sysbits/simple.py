"""A minimal line-less TCP server and client, and the query responder."""

from __future__ import annotations

import argparse
import re
import socket
import sys
import time

from . import net

_RECV_SIZE = 8192
_INT_PREFIX = re.compile(rb"[ \t\n\v\f\r]*([+-]?\d+)")


def query_response(request):
    """Build the HTTP answer echoing the integer that follows "q=" in request.

    The request ends at its first NUL byte. Without "q=" the body is "0"
    and the declared length is 0.
    """
    text = bytes(request).split(b"\0", 1)[0]
    pos = text.find(b"q=")
    q = 0
    qlen = 0
    if pos >= 0:
        match = _INT_PREFIX.match(text, pos + 2)
        q = int(match.group(1)) if match else 0
        qlen = len(str(q))
    return (
        "HTTP/1.0 200 OK\r\n"
        f"Content-Length: {qlen}\r\n"
        "Content-Type: text/plain\r\n"
        f"\r\n{q}"
    ).encode("ascii")


def _serve_connection(conn, on_message):
    """Read from one client until it goes away; True if on_message asked to stop."""
    net.set_nonblocking(conn)
    while True:
        ready, _ = net.wait_for_io(conn, True, -1)
        if not ready:
            continue
        try:
            data = net.recv(conn, _RECV_SIZE)
        except OSError:
            net.lingering_close(conn)
            return False
        if data and on_message(data):
            net.lingering_close(conn)
            return True


def run_server(port, on_message):
    """Accept clients one at a time and pass everything they send to on_message.

    port is a TCP port number or an already listening socket. The server
    runs until on_message returns a true value.
    """
    owned = not isinstance(port, socket.socket)
    listener = net.tcp_listen(port) if owned else port
    net.set_nonblocking(listener)
    try:
        while True:
            if not net.wait_read(listener, -1):
                continue
            try:
                conn, _ = listener.accept()
            except (BlockingIOError, ConnectionAbortedError):
                continue
            if _serve_connection(conn, on_message):
                return
    finally:
        if owned:
            listener.close()


def run_client(host, port, message, interval=1.0, count=None):
    """Send message to the server every interval seconds.

    Stops after count messages (never when None) or when the connection
    fails; returns the number of messages sent.
    """
    data = message.encode() if isinstance(message, str) else bytes(message)
    sock = net.tcp_connect(host, port)
    sent = 0
    try:
        while count is None or sent < count:
            try:
                if not net.wait_write(sock, -1):
                    continue
                net.send(sock, data)
            except OSError:
                net.lingering_close(sock)
                break
            sent += 1
            if interval and (count is None or sent < count):
                time.sleep(interval)
    finally:
        sock.close()
    return sent


def _print_message(data):
    print(f"recv [{len(data)}] {data!r}", flush=True)
    return False


def main(argv=None):
    parser = argparse.ArgumentParser(prog="sysbits-simple", description="Simple TCP server and client.")
    commands = parser.add_subparsers(dest="command", required=True)

    server = commands.add_parser("server", help="print whatever clients send")
    server.add_argument("--port", type=int, default=1234)

    client = commands.add_parser("client", help="send a message repeatedly")
    client.add_argument("--host", default="127.0.0.1")
    client.add_argument("--port", type=int, default=1234)
    client.add_argument("--message", default="client")
    client.add_argument("--interval", type=float, default=1.0)
    client.add_argument("--count", type=int, default=None)

    args = parser.parse_args(argv)
    try:
        if args.command == "server":
            run_server(args.port, _print_message)
        else:
            sent = run_client(args.host, args.port, args.message, args.interval, args.count)
            print(f"sent {sent}", flush=True)
    except KeyboardInterrupt:
        return 0
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())