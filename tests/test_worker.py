import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from offloadbench.client import WorkerClient, WorkerEndpoint, send_request
from offloadbench.engine import CipherEngine, ComputeEngine
from offloadbench.errors import ProtocolError, TransportError
from offloadbench.protocol import (
    ComputeResponse,
    FrameReader,
    decode_response,
    encode_request,
    frame_bytes,
    send_frame,
)
from offloadbench.worker import WorkerListener

KEY = b"k" * 16


def _open(response_bytes):
    return CipherEngine.open_result(decode_response(response_bytes).result, KEY)


def test_sequential_requests_on_one_connection(worker):
    with worker.endpoint.connect(timeout=5) as sock:
        reader = FrameReader(sock)
        for name in (b"A", b"B", b"C"):
            send_frame(sock, encode_request([name * 10], KEY))
            assert _open(reader.read_frame()) == [name * 10]


def test_back_to_back_frames_answered_in_order(worker):
    with worker.endpoint.connect(timeout=5) as sock:
        sock.sendall(b"".join(frame_bytes(encode_request([q], KEY)) for q in (b"1", b"2", b"3")))
        reader = FrameReader(sock)
        assert [_open(reader.read_frame()) for _ in range(3)] == [[b"1"], [b"2"], [b"3"]]


def test_concurrent_connections_get_their_own_answers(worker):
    client = WorkerClient(worker.endpoint, timeout=10, observer=None)

    def call(i):
        queries = [f"query-{i}-{j}".encode() for j in range(i % 3 + 1)]
        return queries, client.compute(queries, KEY)

    with ThreadPoolExecutor(max_workers=16) as pool:
        for queries, response in pool.map(call, range(48)):
            assert CipherEngine.open_result(response.result, KEY) == queries


def test_decode_error_closes_without_response(worker):
    with pytest.raises(ProtocolError, match="without responding"):
        send_request(worker.endpoint, b"\x02\x00\x00\x00\x03\x00\x00\x00abc", timeout=5)
    # the listener keeps serving other connections
    assert _open(send_request(worker.endpoint, encode_request([b"ok"], KEY), timeout=5)) == [b"ok"]


def test_bad_key_closes_without_response(worker):
    with pytest.raises(ProtocolError):
        send_request(worker.endpoint, encode_request([b"q"], b"not-a-key"), timeout=5)


def test_truncated_frame_from_client(worker):
    with worker.endpoint.connect(timeout=5) as sock:
        sock.sendall(frame_bytes(encode_request([b"q"], KEY))[:-3])
        sock.shutdown(socket.SHUT_WR)
        assert sock.recv(1) == b""


def test_unreachable_endpoint(sock_dir):
    with pytest.raises(TransportError):
        send_request(WorkerEndpoint.unix(str(sock_dir / "missing.sock")), b"x", timeout=1)


def test_socket_file_lifecycle(engine, sock_dir):
    path = sock_dir / "stale.sock"
    path.write_text("left over")
    listener = WorkerListener(engine, WorkerEndpoint.unix(str(path)), observer=None).start()
    try:
        assert path.exists()
        assert _open(send_request(listener.endpoint, encode_request([b"x"], KEY), timeout=5)) == [b"x"]
    finally:
        listener.close()
    assert not path.exists()


def test_tcp_endpoint(engine):
    events = []
    with WorkerListener(engine, WorkerEndpoint.tcp("127.0.0.1", 0), observer=events.append) as listener:
        endpoint = listener.bound_endpoint
        assert endpoint.port != 0
        assert _open(send_request(endpoint, encode_request([b"tcp"], KEY), timeout=5)) == [b"tcp"]
        deadline = time.monotonic() + 5
        while not events and time.monotonic() < deadline:
            time.sleep(0.01)
    assert [e.source for e in events] == ["worker"]
    assert events[0].ok


class SlowEngine(ComputeEngine):
    def __init__(self):
        self.started = threading.Event()
        self.finished = threading.Event()

    def compute(self, queries, key):
        self.started.set()
        time.sleep(0.3)
        self.finished.set()
        return ComputeResponse(duration_ms=300.0, result=b"".join(queries))


def test_dropped_connection_does_not_cancel_compute(sock_dir):
    engine = SlowEngine()
    endpoint = WorkerEndpoint.unix(str(sock_dir / "slow.sock"))
    with WorkerListener(engine, endpoint, observer=None):
        sock = endpoint.connect(timeout=5)
        send_frame(sock, encode_request([b"a"], b""))
        assert engine.started.wait(5)
        sock.close()
        assert engine.finished.wait(5)
        response = decode_response(send_request(endpoint, encode_request([b"b", b"c"], b""), timeout=5))
        assert response.result == b"bc"


@pytest.mark.parametrize(
    "text, expected",
    [
        ("unix:/tmp/w.sock", WorkerEndpoint(path="/tmp/w.sock")),
        ("/tmp/w.sock", WorkerEndpoint(path="/tmp/w.sock")),
        ("w.sock", WorkerEndpoint(path="w.sock")),
        ("localhost:9000", WorkerEndpoint(host="localhost", port=9000)),
        (":9000", WorkerEndpoint(host="127.0.0.1", port=9000)),
    ],
)
def test_parse_endpoint(text, expected):
    assert WorkerEndpoint.parse(text) == expected


def test_endpoint_needs_exactly_one_address():
    with pytest.raises(ValueError):
        WorkerEndpoint()
    with pytest.raises(ValueError):
        WorkerEndpoint(path="/x", host="h", port=1)
    with pytest.raises(ValueError):
        WorkerEndpoint(path="/x", host="h")
    with pytest.raises(ValueError):
        WorkerEndpoint(path="/x", port=1)
    with pytest.raises(ValueError):
        WorkerEndpoint(host="h")
    assert str(WorkerEndpoint.tcp("h", 1)) == "h:1"
    assert str(WorkerEndpoint.unix("/x")) == "unix:/x"
