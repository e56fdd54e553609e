"""Threaded accept loop and the HTTP front end.

There is no admission control: every accepted connection gets its own
thread, and reads have no timeout.
"""
from __future__ import annotations

import socket
import threading
import time
from typing import Optional, Tuple

from offloadbench.engine import ComputeEngine
from offloadbench.errors import BenchError, ProtocolError
from offloadbench.log import Observer, TimingEvent, emit, get_logger, log_timing
from offloadbench.protocol import (
    MAX_HEADER,
    RECV_SIZE,
    decode_request,
    encode_response,
    http_response,
    read_http_message,
)

ACCEPT_TIMEOUT = 1.0
DRAIN_TIMEOUT = 1.0
DRAIN_LIMIT = 4 * 1024 * 1024

logger = get_logger("offloadbench.server")


class ThreadedListener:
    """Accepts connections and hands each one to its own daemon thread.

    Subclasses provide ``_create_socket`` (bound and listening) and
    ``handle(conn, peer)``. The connection is closed once ``handle`` returns.
    """

    kind = "listener"

    def __init__(self, observer: Optional[Observer] = log_timing):
        self.observer = observer
        self.address = None
        self._sock: Optional[socket.socket] = None
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def _create_socket(self) -> socket.socket:
        raise NotImplementedError

    def handle(self, conn: socket.socket, peer: str) -> None:
        raise NotImplementedError

    def _cleanup(self) -> None:
        pass

    def bind(self) -> None:
        if self._sock is not None:
            return
        self._sock = self._create_socket()
        self._sock.settimeout(ACCEPT_TIMEOUT)
        self.address = self._sock.getsockname()
        logger.info(f"{self.kind} listening on {self.describe()}")

    def describe(self) -> str:
        return str(self.address)

    def serve_forever(self) -> None:
        self.bind()
        sock = self._sock
        try:
            while not self._closed.is_set():
                try:
                    conn, addr = sock.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._closed.is_set():
                        break
                    logger.warning(f"accept failed on {self.describe()}: {e}")
                    continue

                conn.setblocking(True)
                thread = threading.Thread(target=self._run_handler, args=(conn, addr), daemon=True)
                thread.start()
        finally:
            self._close_socket()

    def start(self) -> "ThreadedListener":
        """Run the accept loop on a background thread."""
        self.bind()
        self._thread = threading.Thread(target=self.serve_forever, name=f"{self.kind}-accept", daemon=True)
        self._thread.start()
        return self

    def close(self) -> None:
        self._closed.set()
        with self._lock:
            sock = self._sock
        if sock is not None:
            # wakes a blocked accept() on Linux; elsewhere the accept timeout does
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if self._thread is not None:
            self._thread.join(timeout=ACCEPT_TIMEOUT * 5)
            self._thread = None
        self._close_socket()

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.close()

    def _close_socket(self) -> None:
        with self._lock:
            sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError:
            pass
        self._cleanup()
        logger.info(f"{self.kind} on {self.describe()} closed")

    def _run_handler(self, conn: socket.socket, addr) -> None:
        peer = _peer_name(addr)
        logger.debug(f"connection from {peer}")
        try:
            self.handle(conn, peer)
        except Exception:  # noqa: BLE001
            logger.exception(f"unhandled error on connection from {peer}")
        finally:
            try:
                conn.close()
            except OSError:
                pass


def _drain(conn: socket.socket, peer: str) -> None:
    """Discard unread request bytes so closing does not reset the connection
    before the peer has read our answer."""
    deadline = time.monotonic() + DRAIN_TIMEOUT
    drained = 0
    try:
        while drained < DRAIN_LIMIT:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            conn.settimeout(remaining)
            chunk = conn.recv(RECV_SIZE)
            if not chunk:
                break
            drained += len(chunk)
    except OSError as e:
        logger.debug(f"stopped draining {peer}: {e}")
    if drained:
        logger.debug(f"discarded {drained} unread bytes from {peer}")


def _peer_name(addr) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr) or "local"


class HttpListener(ThreadedListener):
    """Answers one ``POST /compute`` per connection, then closes it."""

    kind = "http"

    def __init__(
        self,
        engine: ComputeEngine,
        host: str = "127.0.0.1",
        port: int = 8090,
        observer: Optional[Observer] = log_timing,
        max_header: int = MAX_HEADER,
    ):
        super().__init__(observer)
        self.engine = engine
        self.host = host
        self.port = port
        self.max_header = max_header

    def _create_socket(self) -> socket.socket:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server.bind((self.host, self.port))
            server.listen()
        except OSError:
            server.close()
            raise
        return server

    @property
    def server_address(self) -> Tuple[str, int]:
        return self.address[0], self.address[1]

    def describe(self) -> str:
        if self.address is None:
            return f"http://{self.host}:{self.port}"
        return f"http://{self.address[0]}:{self.address[1]}"

    def handle(self, conn: socket.socket, peer: str) -> None:
        try:
            request = read_http_message(conn, self.max_header)
        except ProtocolError as e:
            logger.warning(f"bad request from {peer}: {e}")
            if self._reply(conn, peer, 400, "Bad Request", f"{e}\n".encode("utf-8")):
                _drain(conn, peer)
            return
        except OSError as e:
            logger.debug(f"read from {peer} failed: {e}")
            return
        if request is None:
            logger.debug(f"{peer} closed without sending a request")
            return

        if request.method != "POST" or request.path != "/compute":
            body = f"no route for {request.method} {request.path}\n".encode("utf-8")
            self._reply(conn, peer, 404, "Not Found", body)
            return

        start = time.perf_counter()
        try:
            compute = decode_request(request.body)
            response = self.engine.compute(compute.queries, compute.key)
        except Exception as e:  # noqa: BLE001
            if isinstance(e, BenchError):
                logger.warning(f"compute failed for {peer}: {e}")
            else:
                logger.exception(f"compute failed for {peer}")
            self._reply(conn, peer, 500, "Internal Server Error", f"Error: {e}\n".encode("utf-8"))
            emit(self.observer, TimingEvent("http", 0.0, (time.perf_counter() - start) * 1000, peer, ok=False))
            return

        body = encode_response(response.duration_ms, response.result)
        sent = self._reply(conn, peer, 200, "OK", body, "application/octet-stream")
        total_ms = (time.perf_counter() - start) * 1000
        emit(self.observer, TimingEvent("http", response.duration_ms, total_ms, peer, ok=sent))

    def _reply(self, conn, peer, status, reason, body, content_type="text/plain; charset=utf-8") -> bool:
        try:
            conn.sendall(http_response(status, reason, body, content_type))
            conn.shutdown(socket.SHUT_WR)
        except OSError as e:
            logger.debug(f"dropping {status} response to {peer}: {e}")
            return False
        return True
