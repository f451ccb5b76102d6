"""Reorder RTP packets and assemble them into media samples.

Packets are kept in a circular buffer indexed by sequence number; complete
frames are popped in order, and frames that can no longer complete are
dropped, with an optional callback reporting the loss.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .rtp import Depacketizer, RtpPacket, Sample

_NS_PER_SECOND = 1_000_000_000


def _sub16(a: int, b: int) -> int:
    return (a - b) & 0xFFFF


@dataclass(slots=True)
class _Slot:
    start: bool = False
    end: bool = False
    packet: Optional[RtpPacket] = None


class SampleBuilder:
    """Buffers RTP packets and produces media frames.

    ``max_late`` is the longest delay, in sequence numbers, that the builder
    waits before dropping a frame; it is clamped to the range 2..0x7FFF and
    the buffer holds twice as many packets.
    """

    def __init__(
        self,
        max_late: int,
        depacketizer: Depacketizer,
        sample_rate: int,
        packet_release_handler: Optional[Callable[[RtpPacket], None]] = None,
        packet_dropped_handler: Optional[Callable[[], None]] = None,
    ) -> None:
        max_late = min(max(max_late, 2), 0x7FFF)
        self._packets: List[_Slot] = [_Slot() for _ in range(2 * max_late + 1)]
        self._head = 0
        self._tail = 0
        self._max_late = max_late
        self._depacketizer = depacketizer
        self._sample_rate = sample_rate
        self._release_handler = packet_release_handler
        self._dropped_handler = packet_dropped_handler
        self._last_seqno_valid = False
        self._last_seqno = 0
        self._last_timestamp_valid = False
        self._last_timestamp = 0

    # -- circular buffer helpers -------------------------------------------

    def _length(self) -> int:
        if self._tail <= self._head:
            return self._head - self._tail
        return self._head + len(self._packets) - self._tail

    @property
    def _cap(self) -> int:
        # head == tail means empty, so one slot always stays free
        return len(self._packets) - 1

    def _inc(self, n: int) -> int:
        return n + 1 if n < len(self._packets) - 1 else 0

    def _dec(self, n: int) -> int:
        return n - 1 if n > 0 else len(self._packets) - 1

    def _is_start(self, packet: RtpPacket) -> bool:
        return not packet.payload or self._depacketizer.is_partition_head(packet.payload)

    def _is_end(self, packet: RtpPacket) -> bool:
        return not packet.payload or self._depacketizer.is_partition_tail(
            packet.marker, packet.payload
        )

    # -- invariants ---------------------------------------------------------

    def check(self) -> None:
        """Verify the buffer's invariants, raising RuntimeError on a violation."""
        if self._head == self._tail:
            return
        packets = self._packets
        tail_packet = packets[self._tail].packet
        if tail_packet is None:
            raise RuntimeError("tail is missing")
        if packets[self._dec(self._head)].packet is None:
            raise RuntimeError("head is missing")
        if self._last_seqno_valid:
            diff = _sub16(tail_packet.sequence_number, self._last_seqno)
            if diff == 0 or diff & 0x8000:
                raise RuntimeError("lastSeqno is after tail")

        tail_seqno = tail_packet.sequence_number
        last_index = self._dec(self._head)
        for i in range(self._length()):
            index = (self._tail + i) % len(packets)
            slot = packets[index]
            if slot.packet is None:
                continue
            if slot.packet.sequence_number != (tail_seqno + i) & 0xFFFF:
                raise RuntimeError("wrong seqno")
            ts = slot.packet.timestamp
            if index != self._tail and not slot.start:
                prev = packets[self._dec(index)].packet
                if prev is not None and prev.timestamp != ts:
                    raise RuntimeError("start is not set")
            if index != last_index and not slot.end:
                nxt = packets[self._inc(index)].packet
                if nxt is not None and nxt.timestamp != ts:
                    raise RuntimeError("end is not set")

        i = self._head
        while i != self._tail:
            if packets[i].packet is not None:
                raise RuntimeError("packet is set")
            i = self._inc(i)

    # -- release and drop ---------------------------------------------------

    def _release(self, release_packet: bool) -> bool:
        if self._head == self._tail:
            return False
        packet = self._packets[self._tail].packet
        self._last_seqno_valid = True
        self._last_seqno = packet.sequence_number
        if release_packet and self._release_handler is not None:
            self._release_handler(packet)
        self._packets[self._tail] = _Slot()
        self._tail = self._inc(self._tail)
        while self._tail != self._head and self._packets[self._tail].packet is None:
            self._tail = self._inc(self._tail)
        if self._tail == self._head:
            self._head = 0
            self._tail = 0
        return True

    def _release_all(self) -> None:
        while self._tail != self._head:
            self._release(True)

    def _drop(self) -> Tuple[bool, int]:
        """Drop the oldest frame, complete or not."""
        if self._tail == self._head:
            return False, 0
        if self._dropped_handler is not None:
            self._dropped_handler()
        ts = self._packets[self._tail].packet.timestamp
        self._release(True)
        while self._tail != self._head:
            slot = self._packets[self._tail]
            if slot.start or slot.packet.timestamp != ts:
                break
            self._release(True)
        if not self._last_timestamp_valid:
            self._last_timestamp = ts
            self._last_timestamp_valid = True
        return True, ts

    # -- push ---------------------------------------------------------------

    def push(self, packet: RtpPacket) -> None:
        """Add a packet to the buffer. The packet is retained, not copied."""
        seqno = packet.sequence_number
        if self._last_seqno_valid:
            late = _sub16(self._last_seqno, seqno)
            if late & 0x8000 == 0:
                if late > self._max_late:
                    self._last_seqno_valid = False
                else:
                    return
            else:
                last = _sub16(seqno, self._max_late)
                if _sub16(last, self._last_seqno) & 0x8000 == 0:
                    if self._head != self._tail:
                        tail_prev = _sub16(self._packets[self._tail].packet.sequence_number, 1)
                        if _sub16(last, tail_prev) & 0x8000 == 0:
                            last = tail_prev
                    self._last_seqno = last

        packets = self._packets
        if self._head == self._tail:
            packets[0] = _Slot(self._is_start(packet), self._is_end(packet), packet)
            self._tail = 0
            self._head = 1
            return

        ts = packet.timestamp
        last = self._dec(self._head)
        last_slot = packets[last]
        last_seqno = last_slot.packet.sequence_number

        if seqno == (last_seqno + 1) & 0xFFFF:
            # sequential
            if self._tail == self._inc(self._head):
                self._drop()
            if self._tail != self._head:
                start = (
                    last_slot.end
                    or last_slot.packet.timestamp != ts
                    or self._is_start(packet)
                )
                if start:
                    last_slot.end = True
            else:
                start = self._is_start(packet)
            packets[self._head] = _Slot(start, self._is_end(packet), packet)
            self._head = self._inc(self._head)
            return

        if _sub16(seqno, last_seqno) & 0x8000 == 0:
            # packet in the future
            count = (seqno - last_seqno - 1) & 0xFFFF
            if count >= self._cap:
                self._release_all()
                self.push(packet)
                return
            while self._length() + count + 1 >= self._cap:
                dropped, _ = self._drop()
                if not dropped:
                    return
            index = (self._head + count) % len(packets)
            packets[index] = _Slot(self._is_start(packet), self._is_end(packet), packet)
            self._head = self._inc(index)
            return

        # packet in the past
        count = (last_seqno - seqno + 1) & 0xFFFF
        if count >= self._cap:
            return
        if self._head >= count:
            index = self._head - count
        else:
            index = self._head + len(packets) - count

        if self._tail < self._head:
            if index < self._tail or index > self._head:
                self._tail = index
        elif self._head < index < self._tail:
            self._tail = index

        if packets[index].packet is not None:
            # duplicate
            if self._release_handler is not None:
                self._release_handler(packet)
            return

        start = self._is_start(packet)
        if index != self._tail:
            prev = packets[self._dec(index)]
            if prev.packet is not None:
                if prev.packet.timestamp != ts:
                    start = True
                if not start:
                    start = prev.end
                else:
                    prev.end = True
        end = self._is_end(packet)
        nxt = packets[self._inc(index)]
        if nxt.packet is not None:
            if nxt.packet.timestamp != ts:
                end = True
            if not end:
                end = nxt.start
            else:
                nxt.start = True

        packets[index] = _Slot(start, end, packet)

    # -- pop ----------------------------------------------------------------

    def _pop_rtp_packets(self, force: bool) -> Tuple[Optional[List[RtpPacket]], int]:
        packets = self._packets
        while True:
            if self._tail == self._head:
                return None, 0

            tail_slot = packets[self._tail]
            if not tail_slot.start:
                diff = _sub16(
                    packets[self._dec(self._head)].packet.sequence_number,
                    tail_slot.packet.sequence_number,
                )
                if force or diff > self._max_late:
                    self._drop()
                    continue
                return None, 0

            seqno = tail_slot.packet.sequence_number
            if (
                not force
                and self._last_seqno_valid
                and (self._last_seqno + 1) & 0xFFFF != seqno
            ):
                # packet loss before tail
                return None, 0

            ts = tail_slot.packet.timestamp
            last = self._tail
            restart = False
            while last != self._head and not packets[last].end:
                if packets[last].packet is None:
                    if force:
                        self._drop()
                        restart = True
                        break
                    return None, 0
                last = self._inc(last)
            if restart:
                continue

            if last == self._head:
                return None, 0
            if last < self._tail:
                count = len(packets) + last - self._tail + 1
            else:
                count = last - self._tail + 1
            frame = []
            for _ in range(count):
                frame.append(packets[self._tail].packet)
                self._release(False)
            return frame, ts

    def _pop_sample(self, force: bool) -> Tuple[Optional[Sample], int]:
        frame, ts = self._pop_rtp_packets(force)
        if frame is None:
            return None, 0

        data = bytearray()
        failed = False
        for packet in frame:
            if not failed:
                try:
                    data += self._depacketizer.unmarshal(packet.payload)
                except ValueError:
                    failed = True
            if self._release_handler is not None:
                self._release_handler(packet)
        if failed:
            return None, 0

        samples = 0
        if self._last_timestamp_valid:
            samples = (ts - self._last_timestamp) & 0xFFFFFFFF
        self._last_timestamp_valid = True
        self._last_timestamp = ts
        duration = int(samples / self._sample_rate * _NS_PER_SECOND)
        return Sample(bytes(data), duration), ts

    def pop_with_timestamp(self) -> Tuple[Optional[Sample], int]:
        """Return a completed sample and its RTP timestamp, or (None, 0)."""
        return self._pop_sample(False)

    def pop(self) -> Optional[Sample]:
        """Return a completed sample, or None if the oldest one is not ready."""
        sample, _ = self.pop_with_timestamp()
        return sample

    def force_pop_with_timestamp(self) -> Tuple[Optional[Sample], int]:
        """Like pop_with_timestamp, but drops incomplete frames blocking the way.

        Once it returns (None, 0) the builder is empty.
        """
        return self._pop_sample(True)

    def pop_packets(self) -> Optional[List[RtpPacket]]:
        """Return the packets of a completed frame without releasing them."""
        frame, _ = self._pop_rtp_packets(False)
        return frame

    def force_pop_packets(self) -> Optional[List[RtpPacket]]:
        """Return the packets of the next completed frame, dropping incomplete ones."""
        frame, _ = self._pop_rtp_packets(True)
        return frame