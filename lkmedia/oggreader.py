"""Read Opus packets out of an Ogg container.

Ogg pages can hold up to a second of audio, far too much for one RTP
packet, so the reader hands out one Opus packet at a time, joining the
lacing segments that make up each packet.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, Iterator, Optional, Tuple

_PAGE_HEADER_TYPE_BEGINNING_OF_STREAM = 0x02
_PAGE_HEADER_SIGNATURE = b"OggS"
_ID_PAGE_SIGNATURE = b"OpusHead"
_PAGE_HEADER_LEN = 27
_ID_PAGE_PAYLOAD_LENGTH = 19
_CHECKSUM_POLY = 0x04C11DB7

_NS_PER_MS = 1_000_000
_MAX_FRAME_DURATION_NS = 120 * _NS_PER_MS

# frame duration per TOC configuration (RFC 6716, section 3.1), in nanoseconds
_FRAME_DURATIONS_NS = (
    10_000_000, 20_000_000, 40_000_000, 60_000_000,  # SILK-only
    10_000_000, 20_000_000, 40_000_000, 60_000_000,  # SILK-only
    10_000_000, 20_000_000, 40_000_000, 60_000_000,  # SILK-only
    10_000_000, 20_000_000,  # hybrid
    10_000_000, 20_000_000,  # hybrid
    2_500_000, 5_000_000, 10_000_000, 20_000_000,  # CELT-only
    2_500_000, 5_000_000, 10_000_000, 20_000_000,  # CELT-only
    2_500_000, 5_000_000, 10_000_000, 20_000_000,  # CELT-only
    2_500_000, 5_000_000, 10_000_000, 20_000_000,  # CELT-only
)


class OggError(Exception):
    """Raised when an Ogg stream is malformed."""


class InvalidPacketError(OggError, ValueError):
    """Raised when an Opus packet cannot be parsed."""


def parse_packet_duration(data: bytes) -> int:
    """Return the duration of an Opus packet in nanoseconds."""
    if len(data) < 1:
        raise InvalidPacketError("invalid opus packet")
    toc = data[0]
    code = toc & 3
    if code == 0:
        frames = 1
    elif code in (1, 2):
        frames = 2
    else:
        if len(data) < 2:
            raise InvalidPacketError("invalid opus packet")
        frames = data[1] & 63
    duration = frames * _FRAME_DURATIONS_NS[toc >> 3]
    if duration > _MAX_FRAME_DURATION_NS:
        raise InvalidPacketError("invalid opus packet")
    return duration


def _generate_checksum_table() -> Tuple[int, ...]:
    table = []
    for i in range(256):
        r = i << 24
        for _ in range(8):
            if r & 0x80000000:
                r = (r << 1) ^ _CHECKSUM_POLY
            else:
                r <<= 1
            r &= 0xFFFFFFFF
        table.append(r)
    return tuple(table)


_CHECKSUM_TABLE = _generate_checksum_table()


def _checksum(chunks: Iterable[bytes]) -> int:
    crc = 0
    for chunk in chunks:
        for byte in chunk:
            crc = ((crc << 8) & 0xFFFFFFFF) ^ _CHECKSUM_TABLE[((crc >> 24) ^ byte) & 0xFF]
    return crc


@dataclass(frozen=True)
class OggHeader:
    """Metadata from the Opus identification page."""

    channel_map: int
    channels: int
    output_gain: int
    pre_skip: int
    sample_rate: int
    version: int


@dataclass
class OggPage:
    """One page of an Ogg stream."""

    granule_position: int
    signature: bytes
    version: int
    header_type: int
    serial: int
    index: int
    segments_table: bytes = b""
    payload: bytes = field(default=b"", repr=False)


class OggReader:
    """Reads Opus packets one at a time from a binary stream.

    The identification header is parsed on construction and available as
    ``header``; the comment page that follows it is skipped. ``read_packet``
    raises ``EOFError`` once the stream is exhausted.
    """

    def __init__(self, stream: Optional[BinaryIO], do_checksum: bool = True) -> None:
        if stream is None:
            raise OggError("stream is nil")
        self._stream = stream
        self._do_checksum = do_checksum
        self._page: Optional[OggPage] = None
        self._segment = 0
        self._offset = 0

        self.header = self._read_headers()
        try:
            self._read_page()
        except (EOFError, OggError, OSError):
            pass

    def _read_exact(self, size: int) -> bytes:
        if size == 0:
            return b""
        data = bytearray()
        while len(data) < size:
            chunk = self._stream.read(size - len(data))
            if not chunk:
                break
            data += chunk
        if not data:
            raise EOFError("end of ogg stream")
        if len(data) < size:
            raise OggError("unexpected end of ogg stream")
        return bytes(data)

    def _read_headers(self) -> OggHeader:
        page = self._read_page()
        if page.signature != _PAGE_HEADER_SIGNATURE:
            raise OggError("bad header signature")
        if page.header_type != _PAGE_HEADER_TYPE_BEGINNING_OF_STREAM:
            raise OggError("wrong header, expected beginning of stream")
        if len(page.payload) != _ID_PAGE_PAYLOAD_LENGTH:
            raise OggError("payload for id page must be 19 bytes")
        if page.payload[:8] != _ID_PAGE_SIGNATURE:
            raise OggError("bad payload signature")

        payload = page.payload
        pre_skip, sample_rate, output_gain = struct.unpack_from("<HIH", payload, 10)
        return OggHeader(
            channel_map=payload[18],
            channels=payload[9],
            output_gain=output_gain,
            pre_skip=pre_skip,
            sample_rate=sample_rate,
            version=payload[8],
        )

    def _read_page(self) -> OggPage:
        header = self._read_exact(_PAGE_HEADER_LEN)
        granule, serial, index, expected = struct.unpack_from("<QIII", header, 6)
        segments_table = self._read_exact(header[26])
        payload = self._read_exact(sum(segments_table))

        if self._do_checksum:
            blanked = header[:22] + b"\x00\x00\x00\x00" + header[26:]
            if _checksum((blanked, segments_table, payload)) != expected:
                raise OggError("expected and actual checksum do not match")

        return OggPage(
            granule_position=granule,
            signature=header[:4],
            version=header[4],
            header_type=header[5],
            serial=serial,
            index=index,
            segments_table=segments_table,
            payload=payload,
        )

    def read_packet(self) -> bytes:
        """Return the next Opus packet, raising EOFError at the end of the stream."""
        page = self._page
        while page is None:
            candidate = self._read_page()
            if candidate.segments_table:
                page = self._page = candidate
                self._segment = 0
                self._offset = 0

        table = page.segments_table
        size = 0
        while True:
            segment_size = table[self._segment]
            size += segment_size
            self._segment += 1
            if self._segment == len(table):
                self._page = None
                break
            if segment_size != 255:
                break

        packet = page.payload[self._offset:self._offset + size]
        self._offset += size
        return packet

    def __iter__(self) -> Iterator[bytes]:
        while True:
            try:
                yield self.read_packet()
            except EOFError:
                return