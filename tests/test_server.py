import socket
import time

import pytest

from offloadbench.client import WorkerClient, WorkerEndpoint, http_compute, post
from offloadbench.engine import CipherEngine
from offloadbench.errors import ComputeError
from offloadbench.protocol import decode_response, encode_request, read_http_message
from offloadbench.server import HttpListener

KEY = b"0123456789abcdef"


def _wait_for(events, n=1):
    deadline = time.monotonic() + 5
    while len(events) < n and time.monotonic() < deadline:
        time.sleep(0.01)
    return events


def _raw(server, chunks, half_close=False):
    host, port = server.server_address
    with socket.create_connection((host, port), timeout=5) as sock:
        for chunk in chunks:
            sock.sendall(chunk)
            time.sleep(0.001)
        if half_close:
            sock.shutdown(socket.SHUT_WR)
        message = read_http_message(sock)
        assert sock.recv(1) == b""
    return message


def test_compute_ok(http_server):
    host, port = http_server.server_address
    response = http_compute(host, port, [b"first", b"second"], KEY, timeout=5)
    assert CipherEngine.open_result(response.result, KEY) == [b"first", b"second"]
    events = _wait_for(http_server.events)
    assert events[0].source == "http"
    assert events[0].ok
    assert events[0].compute_ms == response.duration_ms


def test_response_headers(http_server):
    host, port = http_server.server_address
    message = post(host, port, "/compute", encode_request([b"q"], KEY), timeout=5)
    assert message.status == 200
    assert message.headers["content-type"] == "application/octet-stream"
    assert message.headers["connection"] == "close"
    assert int(message.headers["content-length"]) == len(message.body)


def test_request_delivered_one_byte_at_a_time(http_server):
    body = encode_request([b"frag"], KEY)
    request = b"POST /compute HTTP/1.1\r\nContent-Length: %d\r\n\r\n" % len(body) + body
    message = _raw(http_server, [request[i : i + 1] for i in range(len(request))])
    assert message.status == 200
    assert CipherEngine.open_result(decode_response(message.body).result, KEY) == [b"frag"]


def test_request_without_content_length_ends_at_close(http_server):
    body = encode_request([b"eof"], KEY)
    message = _raw(http_server, [b"POST /compute HTTP/1.1\r\n\r\n", body], half_close=True)
    assert message.status == 200
    assert CipherEngine.open_result(decode_response(message.body).result, KEY) == [b"eof"]


@pytest.mark.parametrize(
    "request_bytes",
    [
        b"GET / HTTP/1.1\r\nHost: x\r\n\r\n",
        b"GET /compute HTTP/1.1\r\n\r\n",
        b"POST /other HTTP/1.1\r\nContent-Length: 0\r\n\r\n",
    ],
)
def test_unknown_route(http_server, request_bytes):
    message = _raw(http_server, [request_bytes])
    assert message.status == 404
    assert message.headers["connection"] == "close"
    assert message.body.startswith(b"no route")


def test_malformed_body_is_500(http_server):
    body = b"\x02\x00\x00\x00\x03\x00\x00\x00abc\x04\x00\x00\x00de"
    host, port = http_server.server_address
    message = post(host, port, "/compute", body, timeout=5)
    assert message.status == 500
    assert b"declared 4 bytes" in message.body
    assert not _wait_for(http_server.events)[0].ok


def test_compute_error_surfaces_to_client(http_server):
    host, port = http_server.server_address
    with pytest.raises(ComputeError, match="500"):
        http_compute(host, port, [b"q"], b"bad key", timeout=5)


def test_chunked_request_is_400(http_server):
    message = _raw(http_server, [b"POST /compute HTTP/1.1\r\nTransfer-Encoding: chunked\r\n\r\n"], half_close=True)
    assert message.status == 400
    assert b"chunked" in message.body


def test_truncated_request_is_400(http_server):
    message = _raw(http_server, [b"POST /compute HTTP/1.1\r\nContent-Length: 10\r\n\r\nabc"], half_close=True)
    assert message.status == 400


def test_oversized_header_answer_survives_unread_bytes(engine):
    with HttpListener(engine, port=0, observer=None, max_header=1024) as server:
        request = b"POST /compute HTTP/1.1\r\nX-Pad: " + b"a" * (512 * 1024) + b"\r\n\r\n"
        message = _raw(server, [request], half_close=True)
    assert message.status == 400
    assert b"header block exceeds 1024 bytes" in message.body


def test_peer_closing_without_request_keeps_server_up(http_server):
    host, port = http_server.server_address
    socket.create_connection((host, port), timeout=5).close()
    assert http_compute(host, port, [b"still up"], KEY, timeout=5).result


def test_relay_through_worker(worker):
    relay_events = []
    relay = WorkerClient(worker.endpoint, timeout=5, observer=relay_events.append)
    with HttpListener(relay, port=0, observer=None) as front:
        host, port = front.server_address
        response = http_compute(host, port, [b"via", b"worker"], KEY, timeout=5)
    assert CipherEngine.open_result(response.result, KEY) == [b"via", b"worker"]
    assert relay_events[0].source == "relay"
    assert relay_events[0].total_ms >= relay_events[0].compute_ms


def test_relay_with_worker_down_is_500(sock_dir):
    relay = WorkerClient(WorkerEndpoint.unix(str(sock_dir / "gone.sock")), timeout=1, observer=None)
    with HttpListener(relay, port=0, observer=None) as front:
        host, port = front.server_address
        message = post(host, port, "/compute", encode_request([b"q"], KEY), timeout=5)
    assert message.status == 500
    assert b"cannot connect to worker" in message.body


def test_close_releases_port(engine):
    listener = HttpListener(engine, port=0, observer=None).start()
    host, port = listener.server_address
    listener.close()
    with pytest.raises(OSError):
        socket.create_connection((host, port), timeout=1)
