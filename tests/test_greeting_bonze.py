import threading

import pytest

from sysbits import net
from sysbits.greeting_bonze import GreetingBonze, GuestStatus
from sysbits.simple import query_response

EXPECTED = b"HTTP/1.0 200 OK\r\nContent-Length: 1\r\nContent-Type: text/plain\r\n\r\n1"
REQUEST = b"client q=1".ljust(128, b"\0")


def service_once(gb, fd):
    guest = gb.guest(fd)
    count = guest.write(query_response(guest.request))
    gb.send_off(fd, count)


def start(gb):
    listener = gb.listen_port(0)
    thread = threading.Thread(target=gb.serve, daemon=True)
    thread.start()
    return listener.getsockname()[1], thread


def connect(port):
    sock = net.tcp_connect("127.0.0.1", port)
    sock.settimeout(5)
    return sock


def test_guest_function_answers_each_request():
    gb = GreetingBonze(2048, 128, 5120, guest_fn=service_once)
    port, thread = start(gb)
    client = connect(port)
    try:
        for _ in range(3):
            net.send_all(client, REQUEST)
            assert net.recv(client, 65) == EXPECTED
    finally:
        client.close()
        gb.close()
        thread.join(5)
    assert not thread.is_alive()


def test_deal_hands_out_request():
    gb = GreetingBonze(2048, 128, 5120)
    port, thread = start(gb)
    client = connect(port)
    try:
        for _ in range(2):
            net.send_all(client, REQUEST)
            guest = gb.deal(timeout=5)
            assert guest.status == GuestStatus.DO_JOB
            assert guest.request[:10] == b"client q=1"
            count = guest.write(query_response(guest.request))
            gb.send_off(guest.fd, count)
            assert net.recv(client, 65) == EXPECTED
            assert guest.out_len == 65
    finally:
        client.close()
        gb.close()
        thread.join(5)


def test_descriptor_beyond_capacity_is_closed():
    gb = GreetingBonze(1, 16, 16)
    port, thread = start(gb)
    client = connect(port)
    try:
        with pytest.raises((BrokenPipeError, ConnectionResetError)):
            net.recv(client, 1)
    finally:
        client.close()
        gb.close()
        thread.join(5)


def test_deal_times_out():
    with GreetingBonze(8, 16, 16) as gb:
        with pytest.raises(TimeoutError):
            gb.deal(timeout=0.05)


def test_deal_after_close():
    gb = GreetingBonze(8, 16, 16)
    gb.close()
    with pytest.raises(ValueError):
        gb.deal(timeout=0.05)


def test_send_off_out_of_range():
    with GreetingBonze(8, 16, 16) as gb:
        with pytest.raises(IndexError):
            gb.send_off(8, 1)
        with pytest.raises(IndexError):
            gb.send_off(-1, 1)


def test_send_off_without_connection():
    with GreetingBonze(8, 16, 16) as gb:
        with pytest.raises(ValueError):
            gb.send_off(3, 1)


def test_guest_lookup_out_of_range():
    with GreetingBonze(8, 16, 16) as gb:
        assert gb.guest(7).fd == 7
        with pytest.raises(IndexError):
            gb.guest(8)


def test_guest_write_truncates_to_out_size():
    with GreetingBonze(4, 8, 4) as gb:
        guest = gb.guest(0)
        assert guest.write(b"abcdef") == 4
        assert bytes(guest.out_buf) == b"abcd"
        assert len(guest.in_buf) == 8


def test_default_capacity():
    with GreetingBonze(0, 8, 8) as gb:
        assert gb.capacity == 1024
        assert gb.guest(1023).fd == 1023


def test_serve_requires_listener():
    with GreetingBonze(4, 8, 8) as gb:
        with pytest.raises(ValueError):
            gb.serve()


def test_invalid_buffer_sizes():
    with pytest.raises(ValueError):
        GreetingBonze(4, 0, 8)
    with pytest.raises(ValueError):
        GreetingBonze(4, 8, -1)