"""Outgoing RTP helpers: a pool of reusable buffers and a payload size limit."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

MAX_PAYLOAD_SIZE = 1200

RtpWriter = Callable[[Any, bytes, Optional[Dict[str, Any]]], int]


class PayloadTooLargeError(ValueError):
    """Raised when an RTP payload exceeds MAX_PAYLOAD_SIZE."""

    def __init__(self) -> None:
        super().__init__(
            f"packetization payload size should not greater than {MAX_PAYLOAD_SIZE} bytes"
        )


class _SizedPool:
    """A free list of buffers that all have the same size."""

    def __init__(self, size: int) -> None:
        self.size = size
        self._free: List[bytearray] = []
        self._lock = threading.Lock()

    def get(self) -> bytearray:
        with self._lock:
            if self._free:
                return self._free.pop()
        return bytearray(self.size)

    def put(self, buffer: bytearray) -> None:
        with self._lock:
            self._free.append(buffer)


class PacketPool:
    """Hands out reusable buffers from pools of fixed sizes."""

    def __init__(self, *sizes: int) -> None:
        self._pools = {size: _SizedPool(size) for size in sorted(set(sizes))}

    def get(self, size: int) -> Tuple[bytearray, Optional[_SizedPool]]:
        """Return a buffer of at least ``size`` bytes and the pool it belongs to.

        The smallest pool that fits is used. When no pool is large enough a
        fresh buffer of exactly ``size`` bytes is returned with no pool.
        """
        for pool_size, pool in self._pools.items():
            if pool_size >= size:
                return pool.get(), pool
        return bytearray(size), None


class LimitSizeInterceptor:
    """Rejects outgoing RTP packets whose payload is too large."""

    def bind_local_stream(self, stream: Any, writer: RtpWriter) -> RtpWriter:
        """Wrap ``writer`` so that oversized payloads raise PayloadTooLargeError."""

        def write(header: Any, payload: bytes, attributes: Optional[Dict[str, Any]] = None) -> int:
            if len(payload) > MAX_PAYLOAD_SIZE:
                raise PayloadTooLargeError()
            return writer(header, payload, attributes)

        return write