"""Exception hierarchy shared by the listeners, the transport and the engine."""
from __future__ import annotations


class BenchError(Exception):
    """Base class for every error raised by offloadbench."""


class TransportError(BenchError):
    """Endpoint unreachable, connection reset, or a failed write."""


class ProtocolError(BenchError):
    """Framing that cannot be reconciled with the bytes on the stream."""


class DecodeError(BenchError):
    """A complete frame body that does not parse as the expected layout."""


class ComputeError(BenchError):
    pass


__all__ = [
    "BenchError",
    "TransportError",
    "ProtocolError",
    "DecodeError",
    "ComputeError",
]
