import socket
import threading

import pytest

from sysbits import net
from sysbits.simple import main, query_response, run_client, run_server

EXPECTED = b"HTTP/1.0 200 OK\r\nContent-Length: 1\r\nContent-Type: text/plain\r\n\r\n1"


def test_query_response_from_client_request():
    assert query_response(b"client q=1") == EXPECTED


def test_query_response_stops_at_nul():
    assert query_response(b"client q=1".ljust(128, b"\0")) == EXPECTED
    assert query_response(b"client\0q=1") == query_response(b"client")


def test_query_response_without_query():
    assert query_response(b"client") == (
        b"HTTP/1.0 200 OK\r\nContent-Length: 0\r\nContent-Type: text/plain\r\n\r\n0"
    )


def test_query_response_multi_digit():
    response = query_response(b"GET /?q=42 HTTP/1.0")
    assert response.endswith(b"\r\n\r\n42")
    assert b"Content-Length: 2\r\n" in response


def test_query_response_body_matches_length():
    for request in (b"q=7", b"q=-15", b"q=  300x", b"q=abc"):
        head, body = query_response(request).split(b"\r\n\r\n")
        assert f"Content-Length: {len(body)}".encode() in head


def collect_until_eof(listener, out):
    conn, _ = listener.accept()
    with conn:
        conn.settimeout(5)
        while True:
            chunk = conn.recv(4096)
            if not chunk:
                return
            out.append(chunk)


def test_run_client_sends_count_messages():
    listener = net.tcp_listen(0)
    received = []
    thread = threading.Thread(target=collect_until_eof, args=(listener, received), daemon=True)
    thread.start()
    try:
        sent = run_client("127.0.0.1", listener.getsockname()[1], "client", 0, 3)
        thread.join(5)
    finally:
        listener.close()
    assert sent == 3
    assert b"".join(received) == b"client" * 3


def test_run_server_passes_messages_and_stops():
    listener = net.tcp_listen(0)
    port = listener.getsockname()[1]
    seen = []

    def on_message(data):
        seen.append(data)
        return data == b"two"

    thread = threading.Thread(target=run_server, args=(listener, on_message), daemon=True)
    thread.start()
    try:
        with net.tcp_connect("127.0.0.1", port) as first:
            net.send_all(first, b"one")
        with net.tcp_connect("127.0.0.1", port) as second:
            net.send_all(second, b"two")
            thread.join(5)
    finally:
        listener.close()
    assert not thread.is_alive()
    assert seen == [b"one", b"two"]


def test_main_client_sends():
    listener = net.tcp_listen(0)
    received = []
    thread = threading.Thread(target=collect_until_eof, args=(listener, received), daemon=True)
    thread.start()
    try:
        port = str(listener.getsockname()[1])
        code = main(["client", "--port", port, "--count", "2", "--interval", "0", "--message", "hi"])
        thread.join(5)
    finally:
        listener.close()
    assert code == 0
    assert b"".join(received) == b"hihi"


def test_main_client_connection_refused():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    assert main(["client", "--port", str(port), "--count", "1", "--interval", "0"]) == 1


def test_run_client_refused_raises():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    with pytest.raises(ConnectionRefusedError):
        run_client("127.0.0.1", port, "client", 0, 1)