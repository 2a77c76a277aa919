"""A pool of client connections fed by an event loop and drained by workers.

One thread runs the loop with ``run()``; it accepts connections, reads one
request per connection and marks its job ready. Worker threads take ready
jobs with ``fetch_item()``, answer on the job's socket and hand the job back
with ``reset_item()``, either keeping the connection for the next request
or closing it.
"""

from __future__ import annotations

import itertools
import selectors
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from functools import partial

from . import net

_DEFAULT_JOB_NUM = 1024


class JobStatus(IntEnum):
    NO_JOB = 0
    WAIT_REQUEST = 1
    REQUEST_IN = 2
    DO_JOB = 3
    DO_DONE = 4


@dataclass(eq=False)
class Job:
    """One connection slot: its socket, state and the last request read."""

    index: int
    status: JobStatus = JobStatus.NO_JOB
    sock: socket.socket | None = None
    data: bytes = b""
    error: int = 0


class Pipeline:
    """Holds up to ``max_job_num`` connections (1024 when below 1).

    Each request is read in one go of at most ``recv_buf_len`` bytes.
    """

    def __init__(self, max_job_num=_DEFAULT_JOB_NUM, recv_buf_len=1024, send_buf_len=0):
        if max_job_num < 1:
            max_job_num = _DEFAULT_JOB_NUM
        if recv_buf_len < 1:
            raise ValueError("recv_buf_len must be positive")
        self.max_job_num = max_job_num
        self.recv_buf_len = recv_buf_len
        self.send_buf_len = send_buf_len
        self.jobs = [Job(i) for i in range(max_job_num)]
        self._pos = 0
        self._do_pos = 0
        self._cond = threading.Condition()
        self._selector = selectors.DefaultSelector()
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._selector.register(self._wake_r, selectors.EVENT_READ, None)
        self._pending = deque()
        self._listeners = []
        self._closed = False
        self._cleaned = False
        self._running = False
        self._loop_thread = None
        self._stopped = threading.Event()
        self._stopped.set()

    # -- loop plumbing -------------------------------------------------

    def _wake(self):
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass

    def _drain_wake(self):
        try:
            while self._wake_r.recv(4096):
                pass
        except OSError:
            pass

    def _watch(self, sock, handler):
        """Ask the loop thread to watch sock for input."""
        with self._cond:
            self._pending.append((sock, handler))
        self._wake()

    def _register_pending(self):
        with self._cond:
            pending = list(self._pending)
            self._pending.clear()
        for sock, handler in pending:
            if sock.fileno() >= 0:
                self._selector.register(sock, selectors.EVENT_READ, handler)

    def _claim_job(self):
        n = self.max_job_num
        with self._cond:
            for i in itertools.chain(range(self._pos, n), range(n)):
                job = self.jobs[i]
                if job.status == JobStatus.NO_JOB:
                    job.status = JobStatus.WAIT_REQUEST
                    self._pos = i + 1
                    return job
        return None

    def _accept_conn(self, listener):
        while True:
            try:
                conn, _ = listener.accept()
            except BlockingIOError:
                return
            except ConnectionAbortedError:
                continue
            except OSError:
                return
            conn.setblocking(False)
            job = self._claim_job()
            if job is None:
                net.lingering_close(conn)
                continue
            job.sock = conn
            job.error = 0
            self._selector.register(conn, selectors.EVENT_READ, partial(self._read_conn, job))

    def _read_conn(self, job):
        sock = job.sock
        self._selector.unregister(sock)
        try:
            data = net.recv(sock, self.recv_buf_len)
        except OSError as exc:
            job.error = exc.errno or 0
            data = b""
        if not data:
            self._release(job)
            return
        with self._cond:
            job.data = data
            job.status = JobStatus.REQUEST_IN
            self._cond.notify_all()

    def _release(self, job):
        sock = job.sock
        job.sock = None
        if sock is not None:
            net.lingering_close(sock)
        with self._cond:
            job.data = b""
            job.status = JobStatus.NO_JOB
            self._pos = job.index

    def _find_request(self):
        n = self.max_job_num
        for i in itertools.chain(range(self._do_pos, n), range(n)):
            job = self.jobs[i]
            if job.status == JobStatus.REQUEST_IN:
                job.status = JobStatus.DO_JOB
                self._do_pos = i + 1
                return job
        return None

    def _cleanup(self):
        if self._cleaned:
            return
        self._cleaned = True
        self._selector.close()
        for listener in self._listeners:
            listener.close()
        for job in self.jobs:
            if job.sock is not None:
                job.sock.close()
                job.sock = None
            job.status = JobStatus.NO_JOB
        self._wake_r.close()
        self._wake_w.close()

    # -- public API ----------------------------------------------------

    def listen(self, sock):
        """Accept connections from an already listening socket."""
        if self._closed:
            raise ValueError("pipeline is closed")
        net.set_nonblocking(sock)
        self._listeners.append(sock)
        self._watch(sock, partial(self._accept_conn, sock))

    def listen_port(self, port):
        """Listen on a TCP port; returns the listening socket."""
        sock = net.tcp_listen(port)
        self.listen(sock)
        return sock

    def run(self):
        """Run the event loop until close() is called."""
        with self._cond:
            if self._closed:
                raise ValueError("pipeline is closed")
            if self._running:
                raise RuntimeError("pipeline is already running")
            self._running = True
            self._loop_thread = threading.current_thread()
            self._stopped.clear()
        try:
            while not self._closed:
                self._register_pending()
                for key, _ in self._selector.select():
                    if self._closed:
                        break
                    if key.data is None:
                        self._drain_wake()
                    else:
                        key.data()
        finally:
            with self._cond:
                self._running = False
                self._loop_thread = None
                if self._closed:
                    self._cleanup()
            self._stopped.set()

    def fetch_item(self, timeout=None):
        """Take the next job whose request has arrived.

        Waits up to timeout seconds (forever when None); raises TimeoutError
        when none arrives in time.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise ValueError("pipeline is closed")
                job = self._find_request()
                if job is not None:
                    return job
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError("no request arrived in time")
                self._cond.wait(remaining)

    def reset_item(self, idx, keep_alive):
        """Finish a job: wait for the next request or close the connection."""
        if not 0 <= idx < self.max_job_num:
            raise IndexError(f"job index {idx} not in [0, {self.max_job_num})")
        job = self.jobs[idx]
        if job.sock is None:
            raise ValueError(f"job {idx} has no connection")
        with self._cond:
            job.status = JobStatus.DO_DONE
        if keep_alive:
            with self._cond:
                job.status = JobStatus.WAIT_REQUEST
            self._watch(job.sock, partial(self._read_conn, job))
            return
        self._release(job)

    def close(self):
        """Stop the loop and close every connection and listener."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            running = self._running
            self._cond.notify_all()
            if not running:
                self._cleanup()
                return
        self._wake()
        if self._loop_thread is not threading.current_thread():
            self._stopped.wait()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()