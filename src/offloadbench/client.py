"""Client side: worker transport and the HTTP client used by the load generator."""
from __future__ import annotations

import socket
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from offloadbench.engine import ComputeEngine
from offloadbench.errors import ComputeError, ProtocolError, TransportError
from offloadbench.log import Observer, TimingEvent, emit, get_logger, log_timing
from offloadbench.protocol import (
    MAX_FRAME,
    ComputeResponse,
    HttpMessage,
    decode_response,
    encode_request,
    read_http_message,
    recv_frame,
    send_frame,
)

logger = get_logger("offloadbench.client")


@dataclass(frozen=True)
class WorkerEndpoint:
    """Where a worker listens: a unix socket path, or a host and port."""

    path: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None

    def __post_init__(self):
        networked = self.host is not None or self.port is not None
        if (self.path is not None) == networked or (networked and (self.host is None or self.port is None)):
            raise ValueError("endpoint needs either a socket path or a host and port")

    @classmethod
    def unix(cls, path: str) -> "WorkerEndpoint":
        return cls(path=str(path))

    @classmethod
    def tcp(cls, host: str, port: int) -> "WorkerEndpoint":
        return cls(host=host, port=int(port))

    @classmethod
    def parse(cls, text: str) -> "WorkerEndpoint":
        """Accepts ``unix:/path``, ``/path`` or ``host:port``."""
        if text.startswith("unix:"):
            return cls.unix(text[len("unix:") :])
        host, sep, port = text.rpartition(":")
        if sep and port.isdigit() and "/" not in text:
            return cls.tcp(host or "127.0.0.1", int(port))
        return cls.unix(text)

    @property
    def is_unix(self) -> bool:
        return self.path is not None

    def connect(self, timeout: Optional[float] = None) -> socket.socket:
        if not self.is_unix:
            return socket.create_connection((self.host, self.port), timeout=timeout)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout)
            sock.connect(self.path)
        except OSError:
            sock.close()
            raise
        return sock

    def __str__(self) -> str:
        if self.is_unix:
            return f"unix:{self.path}"
        return f"{self.host}:{self.port}"


def send_request(
    endpoint: WorkerEndpoint,
    request: bytes,
    timeout: Optional[float] = None,
    max_frame: int = MAX_FRAME,
) -> bytes:
    """Send one framed request on a fresh connection and return the response frame."""
    logger.debug(f"relaying {len(request)} bytes to {endpoint}")
    try:
        sock = endpoint.connect(timeout)
    except OSError as e:
        raise TransportError(f"cannot connect to worker at {endpoint}: {e}") from e

    with sock:
        try:
            send_frame(sock, request)
            response = recv_frame(sock, max_frame)
        except OSError as e:
            raise TransportError(f"connection to worker at {endpoint} failed: {e}") from e

    if response is None:
        raise ProtocolError(f"worker at {endpoint} closed the connection without responding")
    return response


class WorkerClient(ComputeEngine):
    """Compute engine that relays every call to a worker process."""

    def __init__(
        self,
        endpoint: WorkerEndpoint,
        timeout: Optional[float] = None,
        observer: Optional[Observer] = log_timing,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.observer = observer

    def send_request(self, request: bytes) -> bytes:
        return send_request(self.endpoint, request, self.timeout)

    def compute(self, queries: Sequence[bytes], key: bytes) -> ComputeResponse:
        start = time.perf_counter()
        response = decode_response(self.send_request(encode_request(queries, key)))
        total_ms = (time.perf_counter() - start) * 1000
        emit(self.observer, TimingEvent("relay", response.duration_ms, total_ms, str(self.endpoint)))
        return response


def post(host: str, port: int, path: str, body: bytes, timeout: Optional[float] = None) -> HttpMessage:
    head = (
        f"POST {path} HTTP/1.1\r\n"
        f"Host: {host}:{port}\r\n"
        "Content-Type: application/octet-stream\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(head.encode("latin-1") + body)
            message = read_http_message(sock)
    except OSError as e:
        raise TransportError(f"request to http://{host}:{port}{path} failed: {e}") from e
    if message is None:
        raise ProtocolError(f"http://{host}:{port} closed the connection without responding")
    return message


def http_compute(
    host: str,
    port: int,
    queries: Sequence[bytes],
    key: bytes,
    timeout: Optional[float] = None,
) -> ComputeResponse:
    """POST a request to ``/compute`` and decode the answer."""
    message = post(host, port, "/compute", encode_request(queries, key), timeout)
    if message.status != 200:
        text = message.body.decode("utf-8", errors="replace").strip()
        raise ComputeError(f"server answered {message.start_line!r}: {text}")
    return decode_response(message.body)
