"""Socket helpers: listening, connecting, whole-buffer I/O and readiness waits."""

from __future__ import annotations

import errno
import os
import select
import socket

_LISTEN_BACKLOG = 128
_LINGER_READ_SIZE = 512
_TCP_CLOSE_WAIT = 8
_TCP_INFO = getattr(socket, "TCP_INFO", 11)
_TCP_INFO_BUFLEN = 256
_POLLRDHUP = getattr(select, "POLLRDHUP", 0x2000)
_HANGUP_EVENTS = _POLLRDHUP | select.POLLHUP | select.POLLERR


def set_nonblocking(sock):
    """Put a socket (or a raw file descriptor) into non-blocking mode."""
    if isinstance(sock, int):
        os.set_blocking(sock, False)
    else:
        sock.setblocking(False)


def lingering_close(sock):
    """Shut down the write side, drain pending input once, then close."""
    try:
        sock.shutdown(socket.SHUT_WR)
    except OSError:
        pass
    try:
        sock.setblocking(False)
        sock.recv(_LINGER_READ_SIZE)
    except OSError:
        pass
    finally:
        sock.close()


def tcp_listen(port):
    """Open a listening IPv4 TCP socket on all interfaces."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.bind(("", port))
        sock.listen(_LISTEN_BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock


def unix_listen(path):
    """Open a listening Unix-domain stream socket, replacing any stale file."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        sock.bind(os.fspath(path))
        sock.listen(_LISTEN_BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock


def tcp_connect(ip, port):
    """Connect to a dotted-quad IPv4 address with Nagle disabled."""
    socket.inet_aton(ip)
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.connect((ip, port))
    except OSError:
        sock.close()
        raise
    return sock


def unix_connect(path):
    """Connect to a Unix-domain stream socket."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(os.fspath(path))
    except OSError:
        sock.close()
        raise
    return sock


def send(sock, data):
    """Write as much of data as the socket accepts without blocking.

    Returns the number of bytes written; stops early when the socket
    would block or accepts nothing.
    """
    view = memoryview(data).cast("B")
    sent = 0
    while sent < len(view):
        try:
            written = sock.send(view[sent:])
        except BlockingIOError:
            break
        if written == 0:
            break
        sent += written
    return sent


def send_all(sock, data):
    """Write all of data, waiting for the socket whenever it is full."""
    view = memoryview(data).cast("B")
    sent = 0
    while sent < len(view):
        written = send(sock, view[sent:])
        if written == 0:
            wait_for_io(sock, False, -1)
        sent += written
    return len(view)


def send_vectored(sock, buffers):
    """Write a sequence of buffers in full with scatter-gather sends."""
    views = [memoryview(b).cast("B") for b in buffers]
    pending = [v for v in views if len(v)]
    total = 0
    while pending:
        try:
            written = sock.sendmsg(pending)
        except BlockingIOError:
            wait_for_io(sock, False, -1)
            continue
        total += written
        while written > 0:
            head = pending[0]
            if written < len(head):
                pending[0] = head[written:]
                written = 0
            else:
                written -= len(head)
                pending.pop(0)
    return total


def recv(sock, size):
    """Read up to size bytes, stopping early if the socket would block.

    Returns what was read, possibly fewer bytes (or none on a non-blocking
    socket with nothing pending). Raises BrokenPipeError if the peer has
    closed the connection before any byte could be read.
    """
    received = bytearray()
    while len(received) < size:
        try:
            chunk = sock.recv(size - len(received))
        except BlockingIOError:
            break
        if not chunk:
            if not received:
                raise BrokenPipeError(errno.EPIPE, "connection closed by peer")
            break
        received += chunk
    return bytes(received)


def is_socket_need_close(sock):
    """True when the TCP connection is in CLOSE_WAIT (the peer has closed)."""
    info = sock.getsockopt(socket.IPPROTO_TCP, _TCP_INFO, _TCP_INFO_BUFLEN)
    return info[0] == _TCP_CLOSE_WAIT


def wait_for_io(sock, for_read, timeout_ms):
    """Poll a socket for readability or writability.

    Returns (ready, error_events): ready is the number of ready descriptors
    (0 on timeout), error_events holds the poll flags when the peer hung up
    or the socket reported an error, else 0. A negative timeout waits forever.
    """
    poller = select.poll()
    mask = (select.POLLIN if for_read else select.POLLOUT) | _POLLRDHUP
    poller.register(sock, mask)
    events = poller.poll(None if timeout_ms < 0 else timeout_ms)
    error_events = 0
    for _, revents in events:
        if revents & _HANGUP_EVENTS:
            error_events = revents
    return len(events), error_events


def wait_for_io_or_timeout(sock, for_read, timeout_ms):
    """Wait for the socket; True when ready, False on timeout.

    Raises BrokenPipeError when the peer hung up or the socket failed.
    """
    ready, error_events = wait_for_io(sock, for_read, timeout_ms)
    if ready and error_events:
        raise BrokenPipeError(errno.EPIPE, "peer hung up")
    return bool(ready)


def wait_read(sock, timeout_ms):
    """Wait until the socket is readable."""
    return wait_for_io_or_timeout(sock, True, timeout_ms)


def wait_write(sock, timeout_ms):
    """Wait until the socket is writable."""
    return wait_for_io_or_timeout(sock, False, timeout_ms)