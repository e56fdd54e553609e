"""Wire formats: length-prefixed frames, HTTP/1.1 messages, request/response bodies.

Every integer and double on the wire is little-endian.
"""
from __future__ import annotations

import struct
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Sequence

from offloadbench.errors import DecodeError, ProtocolError
from offloadbench.log import get_logger

MAX_FRAME = 64 * 1024 * 1024
MAX_HEADER = 64 * 1024
RECV_SIZE = 64 * 1024

HEADER_END = b"\r\n\r\n"
NO_BODY_METHODS = frozenset({"GET", "HEAD", "DELETE", "OPTIONS"})

_LEN = struct.Struct("<I")
_DURATION = struct.Struct("<d")

logger = get_logger("offloadbench.protocol")


def frame_bytes(payload: bytes) -> bytes:
    return _LEN.pack(len(payload)) + payload


def send_frame(sock, payload: bytes) -> None:
    sock.sendall(frame_bytes(payload))


class LengthPrefixedAccumulator:
    """Reassembles length-prefixed frames from chunks of any size.

    The accumulator is either waiting for a 4-byte length prefix or for the
    ``n`` body bytes that prefix announced. Bytes past the end of a frame are
    kept for the next one.
    """

    def __init__(self, max_frame: int = MAX_FRAME):
        self.max_frame = max_frame
        self._buf = bytearray()
        self._need: Optional[int] = None

    @property
    def in_frame(self) -> bool:
        """True while part of a frame has been buffered."""
        return self._need is not None or bool(self._buf)

    def describe_partial(self) -> str:
        if self._need is None:
            return f"{len(self._buf)} of {_LEN.size} length-prefix bytes"
        return f"{len(self._buf)} of {self._need} body bytes"

    def feed(self, chunk: bytes) -> List[bytes]:
        self._buf.extend(chunk)
        frames: List[bytes] = []
        while True:
            if self._need is None:
                if len(self._buf) < _LEN.size:
                    break
                (length,) = _LEN.unpack_from(self._buf)
                if length > self.max_frame:
                    raise ProtocolError(f"frame of {length} bytes exceeds limit of {self.max_frame}")
                del self._buf[: _LEN.size]
                self._need = length
            if len(self._buf) < self._need:
                break
            frames.append(bytes(self._buf[: self._need]))
            del self._buf[: self._need]
            self._need = None
        return frames


class FrameReader:
    """Per-connection reader handing out one complete frame at a time."""

    def __init__(self, sock, max_frame: int = MAX_FRAME, recv_size: int = RECV_SIZE):
        self.sock = sock
        self._recv_size = recv_size
        self._acc = LengthPrefixedAccumulator(max_frame)
        self._ready: Deque[bytes] = deque()

    def read_frame(self) -> Optional[bytes]:
        """Return the next frame, or None if the peer closed between frames."""
        while not self._ready:
            chunk = self.sock.recv(self._recv_size)
            if not chunk:
                if self._acc.in_frame:
                    raise ProtocolError(f"stream ended inside a frame ({self._acc.describe_partial()})")
                return None
            self._ready.extend(self._acc.feed(chunk))
        return self._ready.popleft()


def recv_frame(sock, max_frame: int = MAX_FRAME) -> Optional[bytes]:
    """Read a single frame from a socket that carries nothing after it."""
    return FrameReader(sock, max_frame).read_frame()


@dataclass
class HttpMessage:
    start_line: str
    headers: Dict[str, str]
    body: bytes

    def _part(self, index: int) -> str:
        parts = self.start_line.split(None, 2)
        return parts[index] if len(parts) > index else ""

    @property
    def method(self) -> str:
        return self._part(0).upper()

    @property
    def path(self) -> str:
        return self._part(1).split("?", 1)[0]

    @property
    def version(self) -> str:
        return self._part(2)

    @property
    def status(self) -> int:
        raw = self._part(1)
        if not raw.isdigit():
            raise ProtocolError(f"not a status line: {self.start_line!r}")
        return int(raw)

    @property
    def is_response(self) -> bool:
        return self.start_line.startswith("HTTP/")


class HttpAccumulator:
    """Reassembles one HTTP/1.1 message from chunks of any size.

    Bytes are buffered until the blank line ending the header block. After
    that the message is complete as soon as ``Content-Length`` body bytes are
    present. Without a ``Content-Length`` the body runs until the peer closes,
    see :meth:`finish`.
    """

    def __init__(self, max_header: int = MAX_HEADER, max_body: int = MAX_FRAME):
        self.max_header = max_header
        self.max_body = max_body
        self._buf = bytearray()
        self._scanned = 0
        self._header_end: Optional[int] = None
        self._start_line = ""
        self._headers: Dict[str, str] = {}
        self.content_length: Optional[int] = None
        self.done = False

    @property
    def empty(self) -> bool:
        return not self._buf

    def feed(self, chunk: bytes) -> Optional[HttpMessage]:
        if self.done:
            return None
        self._buf.extend(chunk)
        if self._header_end is None:
            # The terminator may straddle the previous chunk boundary.
            idx = self._buf.find(HEADER_END, max(0, self._scanned - len(HEADER_END) + 1))
            if idx < 0 or idx > self.max_header:
                if len(self._buf) > self.max_header:
                    raise ProtocolError(f"header block exceeds {self.max_header} bytes")
                self._scanned = len(self._buf)
                return None
            self._header_end = idx + len(HEADER_END)
            self._parse_head(bytes(self._buf[:idx]))
        if self.content_length is None and len(self._buf) - self._header_end > self.max_body:
            raise ProtocolError(f"body without Content-Length exceeds limit of {self.max_body}")
        if self.content_length is not None and len(self._buf) >= self._header_end + self.content_length:
            return self._complete(self.content_length)
        return None

    def finish(self) -> HttpMessage:
        """Close out the message at end of stream."""
        if self._header_end is None:
            raise ProtocolError(f"stream ended before the end of the header block ({len(self._buf)} bytes)")
        received = len(self._buf) - self._header_end
        if self.content_length is not None:
            raise ProtocolError(f"stream ended after {received} of {self.content_length} body bytes")
        return self._complete(received)

    def _parse_head(self, block: bytes) -> None:
        lines = block.decode("latin-1").split("\r\n")
        self._start_line = lines[0].strip()
        if not self._start_line:
            raise ProtocolError("empty start line")
        lengths = set()
        for line in lines[1:]:
            if not line:
                continue
            name, sep, value = line.partition(":")
            if not sep:
                raise ProtocolError(f"malformed header line {line!r}")
            name = name.strip().lower()
            value = value.strip()
            if name == "content-length":
                lengths.add(value)
            self._headers[name] = f"{self._headers[name]}, {value}" if name in self._headers else value

        if "chunked" in self._headers.get("transfer-encoding", "").lower():
            raise ProtocolError("chunked transfer encoding is not supported")
        if len(lengths) > 1:
            raise ProtocolError(f"conflicting Content-Length values {sorted(lengths)}")
        if lengths:
            raw = lengths.pop()
            if not (raw.isascii() and raw.isdigit()):
                raise ProtocolError(f"invalid Content-Length {raw!r}")
            self.content_length = int(raw)
            if self.content_length > self.max_body:
                raise ProtocolError(f"Content-Length {self.content_length} exceeds limit of {self.max_body}")
        elif not self._start_line.startswith("HTTP/"):
            method = self._start_line.split(None, 1)[0].upper()
            if method in NO_BODY_METHODS:
                self.content_length = 0

    def _complete(self, body_length: int) -> HttpMessage:
        assert self._header_end is not None
        self.done = True
        body = bytes(self._buf[self._header_end : self._header_end + body_length])
        return HttpMessage(self._start_line, dict(self._headers), body)


def read_http_message(sock, max_header: int = MAX_HEADER, recv_size: int = RECV_SIZE) -> Optional[HttpMessage]:
    """Read one HTTP message; None if the peer closed without sending anything."""
    acc = HttpAccumulator(max_header)
    while True:
        chunk = sock.recv(recv_size)
        if not chunk:
            if acc.empty:
                return None
            message = acc.finish()
            if acc.content_length is None and not message.is_response:
                logger.warning(
                    f"request without Content-Length, using {len(message.body)} bytes read before close as body"
                )
            return message
        message = acc.feed(chunk)
        if message is not None:
            return message


def http_response(status: int, reason: str, body: bytes, content_type: str = "text/plain; charset=utf-8") -> bytes:
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("latin-1") + body


@dataclass(frozen=True)
class ComputeRequest:
    queries: List[bytes]
    key: bytes


@dataclass(frozen=True)
class ComputeResponse:
    duration_ms: float
    result: bytes


def encode_request(queries: Sequence[bytes], key: bytes) -> bytes:
    parts = [_LEN.pack(len(queries))]
    for query in queries:
        parts.append(_LEN.pack(len(query)))
        parts.append(bytes(query))
    parts.append(bytes(key))
    return b"".join(parts)


def decode_request(body: bytes) -> ComputeRequest:
    view = memoryview(body)
    size = len(view)
    if size < _LEN.size:
        raise DecodeError(f"request body of {size} bytes has no query count")
    (count,) = _LEN.unpack_from(view, 0)
    offset = _LEN.size
    if count * _LEN.size > size - offset:
        raise DecodeError(f"query count {count} overruns {size}-byte request body")

    queries: List[bytes] = []
    for i in range(count):
        if size - offset < _LEN.size:
            raise DecodeError(f"query {i}: length header truncated at offset {offset}")
        (length,) = _LEN.unpack_from(view, offset)
        offset += _LEN.size
        if length > size - offset:
            raise DecodeError(f"query {i}: declared {length} bytes but only {size - offset} remain")
        queries.append(bytes(view[offset : offset + length]))
        offset += length
    return ComputeRequest(queries=queries, key=bytes(view[offset:]))


def encode_response(duration_ms: float, result: bytes) -> bytes:
    return _DURATION.pack(duration_ms) + bytes(result)


def decode_response(body: bytes) -> ComputeResponse:
    if len(body) < _DURATION.size:
        raise DecodeError(f"response body of {len(body)} bytes has no duration")
    (duration_ms,) = _DURATION.unpack_from(body, 0)
    return ComputeResponse(duration_ms=duration_ms, result=bytes(body[_DURATION.size :]))
