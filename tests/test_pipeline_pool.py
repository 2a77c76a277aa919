import socket
import threading
import time

import pytest

from sysbits import net
from sysbits.pipeline_pool import JobStatus, Pipeline
from sysbits.simple import query_response

EXPECTED = b"HTTP/1.0 200 OK\r\nContent-Length: 1\r\nContent-Type: text/plain\r\n\r\n1"
REQUEST = b"client q=1".ljust(128, b"\0")


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def start(pl):
    listener = pl.listen_port(0)
    thread = threading.Thread(target=pl.run, daemon=True)
    thread.start()
    return listener.getsockname()[1], thread


@pytest.fixture
def running():
    pl = Pipeline(8, 1024, 0)
    port, thread = start(pl)
    yield pl, port
    pl.close()
    thread.join(5)


def connect(port):
    sock = net.tcp_connect("127.0.0.1", port)
    sock.settimeout(5)
    return sock


def serve_one(pl, keep_alive):
    job = pl.fetch_item(timeout=5)
    assert job.status == JobStatus.DO_JOB
    net.send_all(job.sock, query_response(job.data))
    pl.reset_item(job.index, keep_alive)
    return job


def test_request_is_answered_and_connection_kept(running):
    pl, port = running
    client = connect(port)
    try:
        for _ in range(2):
            net.send_all(client, REQUEST)
            job = serve_one(pl, True)
            assert job.data[:10] == b"client q=1"
            assert net.recv(client, 65) == EXPECTED
        assert wait_until(lambda: pl.jobs[0].status == JobStatus.WAIT_REQUEST)
    finally:
        client.close()


def test_reset_without_keep_alive_closes(running):
    pl, port = running
    client = connect(port)
    try:
        net.send_all(client, REQUEST)
        job = serve_one(pl, False)
        assert net.recv(client, 65) == EXPECTED
        with pytest.raises((BrokenPipeError, ConnectionResetError)):
            net.recv(client, 1)
        assert job.status == JobStatus.NO_JOB
        assert job.sock is None
    finally:
        client.close()


def test_client_disconnect_frees_job(running):
    pl, port = running
    client = connect(port)
    wait_until(lambda: pl.jobs[0].status == JobStatus.WAIT_REQUEST)
    assert pl.jobs[0].status == JobStatus.WAIT_REQUEST
    client.close()
    wait_until(lambda: pl.jobs[0].status == JobStatus.NO_JOB)
    assert pl.jobs[0].status == JobStatus.NO_JOB


def test_no_idle_job_closes_new_connection():
    pl = Pipeline(1, 64, 0)
    port, thread = start(pl)
    first = connect(port)
    second = None
    try:
        assert wait_until(lambda: pl.jobs[0].status == JobStatus.WAIT_REQUEST)
        second = connect(port)
        with pytest.raises((BrokenPipeError, ConnectionResetError)):
            net.recv(second, 1)
    finally:
        first.close()
        if second is not None:
            second.close()
        pl.close()
        thread.join(5)
    assert not thread.is_alive()


def test_default_job_number():
    with Pipeline(0, 16, 0) as pl:
        assert pl.max_job_num == 1024
        assert len(pl.jobs) == 1024


def test_fetch_item_times_out():
    with Pipeline(4, 16, 0) as pl:
        with pytest.raises(TimeoutError):
            pl.fetch_item(timeout=0.05)


def test_fetch_item_after_close():
    pl = Pipeline(4, 16, 0)
    pl.close()
    with pytest.raises(ValueError):
        pl.fetch_item(timeout=0.05)


def test_reset_item_out_of_range():
    with Pipeline(4, 16, 0) as pl:
        with pytest.raises(IndexError):
            pl.reset_item(4, True)
        with pytest.raises(IndexError):
            pl.reset_item(-1, False)


def test_reset_idle_job_rejected():
    with Pipeline(4, 16, 0) as pl:
        with pytest.raises(ValueError):
            pl.reset_item(0, True)


def test_invalid_recv_buffer():
    with pytest.raises(ValueError):
        Pipeline(4, 0, 0)


def test_close_stops_run():
    pl = Pipeline(2, 16, 0)
    _, thread = start(pl)
    pl.close()
    thread.join(5)
    assert not thread.is_alive()
    with pytest.raises(ValueError):
        pl.run()