"""Compute engines.

An engine turns a list of query blobs plus a key blob into a result blob and
reports how long the computation took. The listeners only ever call
``compute`` and treat the blobs as opaque.
"""
from __future__ import annotations

import struct
import time
from typing import List, Sequence

from Crypto.Cipher import AES

from offloadbench.errors import ComputeError, DecodeError
from offloadbench.protocol import ComputeResponse

_U32 = struct.Struct("<I")
NONCE_SIZE = 16
TAG_SIZE = 16


class ComputeEngine:
    """Interface shared by in-process engines and the worker relay.

    Implementations must be safe to call from several connection threads at
    once.
    """

    def compute(self, queries: Sequence[bytes], key: bytes) -> ComputeResponse:
        raise NotImplementedError


class CipherEngine(ComputeEngine):
    """Seals every query with AES-EAX under the request key, ``rounds`` times over."""

    def __init__(self, rounds: int = 1):
        if rounds < 1:
            raise ValueError("rounds must be >= 1")
        self.rounds = rounds

    def compute(self, queries: Sequence[bytes], key: bytes) -> ComputeResponse:
        if len(key) not in AES.key_size:
            raise DecodeError(f"key blob of {len(key)} bytes is not an AES key")
        start = time.perf_counter()
        try:
            sealed = [self._seal(bytes(q), key) for q in queries]
        except (ValueError, TypeError) as e:
            raise ComputeError(f"sealing failed: {e}") from e
        duration_ms = (time.perf_counter() - start) * 1000
        return ComputeResponse(duration_ms=duration_ms, result=pack_result(self.rounds, sealed))

    def _seal(self, data: bytes, key: bytes) -> bytes:
        for _ in range(self.rounds):
            cipher = AES.new(key, AES.MODE_EAX)
            ciphertext, tag = cipher.encrypt_and_digest(data)
            data = cipher.nonce + tag + ciphertext
        return data

    @staticmethod
    def open_result(result: bytes, key: bytes) -> List[bytes]:
        """Recover the original queries from a result blob."""
        rounds, sealed = unpack_result(result)
        opened = []
        for i, data in enumerate(sealed):
            for _ in range(rounds):
                if len(data) < NONCE_SIZE + TAG_SIZE:
                    raise DecodeError(f"sealed query {i} is too short")
                nonce = data[:NONCE_SIZE]
                tag = data[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
                cipher = AES.new(key, AES.MODE_EAX, nonce=nonce)
                try:
                    data = cipher.decrypt_and_verify(data[NONCE_SIZE + TAG_SIZE :], tag)
                except ValueError as e:
                    raise ComputeError(f"sealed query {i} failed authentication") from e
            opened.append(data)
        return opened


def pack_result(rounds: int, sealed: Sequence[bytes]) -> bytes:
    parts = [_U32.pack(rounds), _U32.pack(len(sealed))]
    for blob in sealed:
        parts.append(_U32.pack(len(blob)))
        parts.append(blob)
    return b"".join(parts)


def unpack_result(result: bytes):
    if len(result) < 2 * _U32.size:
        raise DecodeError(f"result blob of {len(result)} bytes has no header")
    rounds, count = struct.unpack_from("<II", result, 0)
    offset = 2 * _U32.size
    sealed = []
    for i in range(count):
        if len(result) - offset < _U32.size:
            raise DecodeError(f"result entry {i}: length header truncated")
        (length,) = _U32.unpack_from(result, offset)
        offset += _U32.size
        if length > len(result) - offset:
            raise DecodeError(f"result entry {i}: declared {length} bytes but only {len(result) - offset} remain")
        sealed.append(bytes(result[offset : offset + length]))
        offset += length
    if offset != len(result):
        raise DecodeError(f"{len(result) - offset} trailing bytes after result entries")
    return rounds, sealed
