"""A connection server that reads and writes each client in background threads.

Clients are kept in a table indexed by their file descriptor. Each accepted
connection gets one read of up to ``in_size`` bytes; the request is then
handed to ``guest_fn`` or left for ``deal()``. ``send_off()`` writes the
answer from the guest's output buffer and starts the next read.
"""

from __future__ import annotations

import itertools
import selectors
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum

from . import net

_DEFAULT_CAPACITY = 1024


class GuestStatus(IntEnum):
    NO_JOB = 0
    WAIT_REQUEST = 1
    REQUEST_IN = 2
    DO_JOB = 3
    DO_DONE = 4
    WAIT_SEND_OFF = 5
    SEND_DONE = 6


@dataclass(eq=False)
class Guest:
    """A client slot with its input and output buffers."""

    fd: int
    in_buf: bytearray
    out_buf: bytearray
    status: GuestStatus = GuestStatus.NO_JOB
    in_len: int = 0
    out_len: int = 0
    error: int = 0
    sock: socket.socket | None = field(default=None, repr=False)

    @property
    def request(self):
        """The bytes of the last request read."""
        return bytes(self.in_buf[:self.in_len])

    def write(self, data):
        """Copy data to the output buffer, truncated to its size; returns the count."""
        count = min(len(data), len(self.out_buf))
        self.out_buf[:count] = bytes(data[:count])
        return count


class GreetingBonze:
    """Serves up to ``capacity`` descriptors (1024 when below 1)."""

    def __init__(self, capacity=_DEFAULT_CAPACITY, in_size=128, out_size=5120, guest_fn=None):
        if capacity < 1:
            capacity = _DEFAULT_CAPACITY
        if in_size < 1:
            raise ValueError("in_size must be positive")
        if out_size < 0:
            raise ValueError("out_size must not be negative")
        self.capacity = capacity
        self.in_size = in_size
        self.out_size = out_size
        self.guest_fn = guest_fn
        self._guests = [Guest(fd, bytearray(in_size), bytearray(out_size)) for fd in range(capacity)]
        self._last_fd = -1
        self._listener = None
        self._cond = threading.Condition()
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._closed = False
        self._serving = False
        self._serve_thread = None
        self._stopped = threading.Event()
        self._stopped.set()

    # -- background I/O ------------------------------------------------

    @staticmethod
    def _start(target, *args):
        threading.Thread(target=target, args=args, daemon=True).start()

    def _init_read(self, guest, sock):
        with self._cond:
            if guest.sock is not sock:
                return
            guest.status = GuestStatus.WAIT_REQUEST
        self._start(self._do_read, guest, sock)

    def _do_read(self, guest, sock):
        try:
            count = sock.recv_into(guest.in_buf, self.in_size)
        except OSError as exc:
            self._drop(guest, sock, exc)
            return
        if count == 0:
            self._drop(guest, sock)
            return
        with self._cond:
            if guest.sock is not sock:
                return
            guest.in_len = count
            self._last_fd = guest.fd
            handler = self.guest_fn
            guest.status = GuestStatus.DO_JOB if handler else GuestStatus.REQUEST_IN
            self._cond.notify_all()
        if handler:
            try:
                handler(self, guest.fd)
            except Exception:
                self._drop(guest, sock)
                raise

    def _do_write(self, guest, sock, length):
        try:
            sock.sendall(memoryview(guest.out_buf)[:length])
        except OSError as exc:
            self._drop(guest, sock, exc)
            return
        with self._cond:
            if guest.sock is not sock:
                return
            guest.status = GuestStatus.SEND_DONE
        self._init_read(guest, sock)

    def _drop(self, guest, sock, exc=None):
        with self._cond:
            if guest.sock is not sock:
                return
            guest.sock = None
            guest.status = GuestStatus.NO_JOB
            guest.error = (exc.errno or 0) if exc is not None else 0
        net.lingering_close(sock)

    def _accept_all(self):
        while True:
            try:
                conn, _ = self._listener.accept()
            except BlockingIOError:
                return
            conn.setblocking(True)
            fd = conn.fileno()
            if fd >= self.capacity:
                net.lingering_close(conn)
                continue
            guest = self._guests[fd]
            with self._cond:
                guest.sock = conn
                guest.in_len = 0
                guest.out_len = 0
                guest.error = 0
            self._init_read(guest, conn)

    # -- public API ----------------------------------------------------

    def guest(self, fd):
        """The guest slot for a descriptor."""
        if not 0 <= fd < self.capacity:
            raise IndexError(f"fd {fd} not in [0, {self.capacity})")
        return self._guests[fd]

    def listen(self, sock):
        """Serve connections arriving on an already listening socket."""
        self._listener = sock

    def listen_port(self, port):
        """Listen on a TCP port; returns the listening socket."""
        sock = net.tcp_listen(port)
        self.listen(sock)
        return sock

    def serve(self):
        """Accept connections until close() is called."""
        if self._listener is None:
            raise ValueError("not listening")
        with self._cond:
            if self._closed:
                raise ValueError("server is closed")
            if self._serving:
                raise RuntimeError("already serving")
            self._serving = True
            self._serve_thread = threading.current_thread()
            self._stopped.clear()
        selector = selectors.DefaultSelector()
        try:
            self._listener.setblocking(False)
            selector.register(self._listener, selectors.EVENT_READ)
            selector.register(self._wake_r, selectors.EVENT_READ)
            while not self._closed:
                for key, _ in selector.select():
                    if self._closed:
                        break
                    if key.fileobj is self._wake_r:
                        try:
                            self._wake_r.recv(4096)
                        except OSError:
                            pass
                    else:
                        self._accept_all()
        finally:
            selector.close()
            with self._cond:
                self._serving = False
                self._serve_thread = None
            self._stopped.set()

    def deal(self, timeout=None):
        """Take the next guest whose request has arrived.

        Waits up to timeout seconds (forever when None); raises TimeoutError
        when none arrives in time.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise ValueError("server is closed")
                start = max(self._last_fd, 0) % self.capacity
                for fd in itertools.chain(range(start, self.capacity), range(start)):
                    guest = self._guests[fd]
                    if guest.status == GuestStatus.REQUEST_IN:
                        guest.status = GuestStatus.DO_JOB
                        self._last_fd = fd + 1
                        return guest
                self._last_fd = -1
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError("no request arrived in time")
                self._cond.wait(remaining)

    def send_off(self, fd, out_len):
        """Send out_len bytes of the guest's output buffer, then read again."""
        guest = self.guest(fd)
        with self._cond:
            sock = guest.sock
            if sock is None:
                raise ValueError(f"fd {fd} has no connection")
            guest.status = GuestStatus.DO_DONE
            out_len = max(0, min(out_len, self.out_size))
            guest.out_len = out_len
            guest.status = GuestStatus.WAIT_SEND_OFF
        self._start(self._do_write, guest, sock, out_len)

    def close(self):
        """Stop serving and close every connection."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            serving = self._serving
            self._cond.notify_all()
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass
        if serving and self._serve_thread is not threading.current_thread():
            self._stopped.wait()
        with self._cond:
            socks = [g.sock for g in self._guests if g.sock is not None]
            for guest in self._guests:
                guest.sock = None
                guest.status = GuestStatus.NO_JOB
        for sock in socks:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        if self._listener is not None:
            self._listener.close()
        self._wake_r.close()
        self._wake_w.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()