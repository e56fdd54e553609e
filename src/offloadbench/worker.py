"""Worker process side of the offload protocol.

Each connection carries a strict request/response sequence of
length-prefixed frames. A request that fails to decode or compute ends the
connection without a response frame.
"""
from __future__ import annotations

import os
import socket
import time
from pathlib import Path
from typing import Optional

from offloadbench.client import WorkerEndpoint
from offloadbench.engine import ComputeEngine
from offloadbench.errors import BenchError, ProtocolError
from offloadbench.log import Observer, TimingEvent, emit, get_logger, log_timing
from offloadbench.protocol import MAX_FRAME, FrameReader, decode_request, encode_response, send_frame
from offloadbench.server import ThreadedListener

DEFAULT_SOCKET_PATH = "/tmp/offloadbench-worker.sock"

logger = get_logger("offloadbench.worker")


def default_socket_path() -> str:
    return os.environ.get("OFFLOADBENCH_SOCKET", DEFAULT_SOCKET_PATH)


class WorkerListener(ThreadedListener):
    kind = "worker"

    def __init__(
        self,
        engine: ComputeEngine,
        endpoint: WorkerEndpoint,
        observer: Optional[Observer] = log_timing,
        max_frame: int = MAX_FRAME,
    ):
        super().__init__(observer)
        self.engine = engine
        self.endpoint = endpoint
        self.max_frame = max_frame

    def _create_socket(self) -> socket.socket:
        if self.endpoint.is_unix:
            path = Path(self.endpoint.path)
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists() or path.is_symlink():
                logger.debug(f"removing stale socket {path}")
                path.unlink()
            server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            bind_to = str(path)
        else:
            server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            bind_to = (self.endpoint.host, self.endpoint.port)
        try:
            server.bind(bind_to)
            server.listen()
        except OSError:
            server.close()
            raise
        return server

    @property
    def bound_endpoint(self) -> WorkerEndpoint:
        """The endpoint clients should use (resolves port 0)."""
        if self.endpoint.is_unix or self.address is None:
            return self.endpoint
        return WorkerEndpoint.tcp(self.address[0], self.address[1])

    def describe(self) -> str:
        return str(self.bound_endpoint)

    def _cleanup(self) -> None:
        if self.endpoint.is_unix:
            try:
                os.unlink(self.endpoint.path)
            except FileNotFoundError:
                pass

    def handle(self, conn: socket.socket, peer: str) -> None:
        reader = FrameReader(conn, self.max_frame)
        served = 0
        while True:
            try:
                body = reader.read_frame()
            except ProtocolError as e:
                logger.warning(f"protocol error from {peer}: {e}")
                break
            except OSError as e:
                logger.debug(f"read from {peer} failed: {e}")
                break
            if body is None:
                break

            start = time.perf_counter()
            try:
                request = decode_request(body)
                response = self.engine.compute(request.queries, request.key)
            except BenchError as e:
                logger.warning(f"request {served + 1} from {peer} failed: {e}")
                emit(self.observer, TimingEvent("worker", 0.0, (time.perf_counter() - start) * 1000, peer, ok=False))
                break

            try:
                send_frame(conn, encode_response(response.duration_ms, response.result))
            except OSError as e:
                logger.debug(f"dropping response to {peer}: {e}")
                break
            served += 1
            emit(self.observer, TimingEvent("worker", response.duration_ms, (time.perf_counter() - start) * 1000, peer))

        logger.debug(f"connection from {peer} done after {served} requests")
