"""Minimal RTP data types shared by the media buffers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

SEQUENCE_MASK = 0xFFFF
TIMESTAMP_MASK = 0xFFFFFFFF


@dataclass
class RtpPacket:
    """An RTP packet: the header fields the buffers need, plus its payload.

    Sequence numbers wrap at 16 bits and timestamps at 32 bits; values
    given at construction are reduced to those widths.
    """

    sequence_number: int = 0
    timestamp: int = 0
    marker: bool = False
    payload: bytes = b""
    padding: bool = False
    ssrc: int = 0
    payload_type: int = 0

    def __post_init__(self) -> None:
        self.sequence_number &= SEQUENCE_MASK
        self.timestamp &= TIMESTAMP_MASK
        self.payload = bytes(self.payload)


@dataclass(frozen=True)
class Sample:
    """A media frame assembled from one or more RTP packets."""

    data: bytes = b""
    duration_ns: int = 0

    @property
    def duration(self) -> timedelta:
        return timedelta(microseconds=self.duration_ns / 1000)


class Depacketizer:
    """Turns RTP payloads back into codec data and finds frame boundaries.

    This base behaves as a pass-through: payloads are returned unchanged,
    a payload is a partition head only if it starts with ``head_bytes``
    (never, by default), and the marker bit marks the partition tail unless
    ``every_packet_is_tail`` is set. Codec-specific subclasses override
    these methods; ``unmarshal`` raises ``ValueError`` for a malformed
    payload.
    """

    def __init__(self, head_bytes: bytes = b"", every_packet_is_tail: bool = False) -> None:
        self.head_bytes = bytes(head_bytes)
        self.every_packet_is_tail = every_packet_is_tail

    def unmarshal(self, payload: bytes) -> bytes:
        return bytes(payload)

    def is_partition_head(self, payload: bytes) -> bool:
        if not self.head_bytes or len(payload) < len(self.head_bytes):
            return False
        return bytes(payload[: len(self.head_bytes)]) == self.head_bytes

    def is_partition_tail(self, marker: bool, payload: bytes) -> bool:
        return self.every_packet_is_tail or bool(marker)