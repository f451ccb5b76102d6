"""Jitter buffer that reorders RTP packets and releases complete samples.

Packets are held in sequence-number order in a doubly linked list. Samples
are released once complete and in order; samples that are too old to ever
complete, according to the configured maximum latency, are dropped.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Callable, List, Optional, Union

from .rtp import Depacketizer, RtpPacket

_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF

Latency = Union[timedelta, float, int]


def _before16(a: int, b: int) -> bool:
    return ((b - a) & _MASK16) & 0x8000 == 0


def _before32(a: int, b: int) -> bool:
    return ((b - a) & _MASK32) & 0x80000000 == 0


def _outside_range(a: int, b: int) -> bool:
    return (a - b) & _MASK16 > 3000 and (b - a) & _MASK16 > 3000


def _latency_to_rtp(max_latency: Latency, clock_rate: int) -> int:
    if isinstance(max_latency, timedelta):
        seconds = max_latency.total_seconds()
    else:
        seconds = float(max_latency)
    return int(seconds * clock_rate) & _MASK32


@dataclass
class BufferStats:
    """Counters describing what went through a jitter buffer."""

    packets_pushed: int = 0
    padding_pushed: int = 0
    packets_dropped: int = 0
    packets_popped: int = 0
    samples_popped: int = 0


class _Node:
    __slots__ = ("prev", "next", "start", "end", "reset", "padding", "packet")

    def __init__(self, start: bool, end: bool, padding: bool, packet: RtpPacket) -> None:
        self.prev: Optional[_Node] = None
        self.next: Optional[_Node] = None
        self.start = start
        self.end = end
        self.reset = False
        self.padding = padding
        self.packet = packet

    @property
    def sn(self) -> int:
        return self.packet.sequence_number

    @property
    def ts(self) -> int:
        return self.packet.timestamp


class JitterBuffer:
    """Reorders RTP packets and hands out complete samples.

    ``max_latency`` is a ``timedelta`` or a number of seconds. The optional
    ``packet_dropped_handler`` is called whenever packets are lost or dropped.
    """

    def __init__(
        self,
        depacketizer: Depacketizer,
        clock_rate: int,
        max_latency: Latency,
        packet_dropped_handler: Optional[Callable[[], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._depacketizer = depacketizer
        self._clock_rate = clock_rate
        self._max_late = _latency_to_rtp(max_latency, clock_rate)
        self._on_packet_dropped = packet_dropped_handler
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._stats = BufferStats()
        self._lock = threading.Lock()

        self._initialized = False
        self._prev_sn = 0
        self._head: Optional[_Node] = None
        self._tail: Optional[_Node] = None
        self._max_sample_size = 0
        self._min_ts = 0

    # -- public API ---------------------------------------------------------

    def update_max_latency(self, max_latency: Latency) -> None:
        """Change the maximum latency, shifting the drop threshold accordingly."""
        with self._lock:
            max_late = _latency_to_rtp(max_latency, self._clock_rate)
            self._min_ts = (self._min_ts + self._max_late - max_late) & _MASK32
            self._max_late = max_late

    def push(self, packet: RtpPacket) -> None:
        """Add a packet to the buffer."""
        with self._lock:
            self._push(packet)

    def pop(self, force: bool) -> List[RtpPacket]:
        """Return the packets of ready samples; with ``force``, everything buffered."""
        with self._lock:
            return self._force_pop() if force else self._pop()

    def pop_samples(self, force: bool) -> List[List[RtpPacket]]:
        """Like ``pop``, but with the packets grouped by sample."""
        with self._lock:
            return self._force_pop_samples() if force else self._pop_samples()

    def stats(self) -> BufferStats:
        """Return a snapshot of the buffer's counters."""
        with self._lock:
            return replace(self._stats)

    def packet_loss(self) -> float:
        """Return the ratio of dropped packets to pushed packets."""
        with self._lock:
            if self._stats.packets_pushed == 0:
                return 0.0
            return self._stats.packets_dropped / self._stats.packets_pushed

    # -- push ---------------------------------------------------------------

    def _note_max_sample_size(self, ts: int, prev_ts: int) -> None:
        size = (ts - prev_ts) & _MASK32
        if size > self._max_sample_size:
            self._max_sample_size = size

    def _push(self, pkt: RtpPacket) -> None:
        self._stats.packets_pushed += 1
        if pkt.padding:
            self._stats.padding_pushed += 1

        if not pkt.payload:
            # padding packets at the beginning of the stream are discarded
            if not self._initialized:
                return
            start = end = padding = True
        else:
            start = self._depacketizer.is_partition_head(pkt.payload)
            end = self._depacketizer.is_partition_tail(pkt.marker, pkt.payload)
            padding = False

        p = _Node(start, end, padding, pkt)
        sn = pkt.sequence_number
        ts = pkt.timestamp

        before_prev = _before16(sn, self._prev_sn)
        outside_prev_range = _outside_range(sn, self._prev_sn)

        if not self._initialized:
            if p.start:
                while self._head is not None and _before16(self._head.sn, sn):
                    self._head = self._head.next
                    if self._head is None:
                        self._tail = None
                # initialize on the first start packet
                self._initialized = True
                self._prev_sn = (sn - 1) & _MASK16
                self._min_ts = (ts - self._max_late) & _MASK32
                p.reset = True
        elif before_prev and not outside_prev_range:
            # arrived after its place in the stream was already released
            if not p.padding:
                self._stats.packets_dropped += 1
                if self._on_packet_dropped is not None:
                    self._on_packet_dropped()
            return

        if self._tail is None:
            if not p.reset:
                p.reset = p.start and outside_prev_range
            self._min_ts = (ts - self._max_late) & _MASK32
            self._head = p
            self._tail = p
            return

        head = self._head
        tail = self._tail
        before_head = _before16(sn, head.sn)
        before_tail = _before16(sn, tail.sn)
        outside_head_range = _outside_range(sn, head.sn)
        outside_tail_range = _outside_range(sn, tail.sn)

        if not before_tail and not outside_tail_range:
            # append within range
            self._min_ts = (self._min_ts + ts - tail.ts) & _MASK32
            if sn == (tail.sn + 1) & _MASK16:
                self._note_max_sample_size(ts, tail.ts)
            p.prev = tail
            tail.next = p
            self._tail = p
        elif outside_head_range and outside_tail_range:
            # append after a sequence number reset
            p.reset = p.start
            self._min_ts = (self._min_ts + self._max_sample_size) & _MASK32
            p.prev = tail
            tail.next = p
            self._tail = p
        elif before_head and not outside_head_range:
            # prepend within range
            p.reset = p.start and outside_prev_range
            head.prev = p
            p.next = head
            self._head = p
        elif outside_tail_range:
            # insert within head range
            c = tail.prev
            while c is not None:
                if _before16(sn, c.sn) or _outside_range(sn, c.sn):
                    c = c.prev
                    continue
                if sn == (c.sn + 1) & _MASK16:
                    self._note_max_sample_size(ts, c.ts)
                self._insert_after(c, p)
                break
        else:
            # insert within tail range
            c = tail.prev
            while c is not None:
                outside_c_range = _outside_range(sn, c.sn)
                if _before16(sn, c.sn) and not outside_c_range:
                    c = c.prev
                    continue
                if p.start and outside_c_range:
                    p.reset = True
                elif sn == (c.sn + 1) & _MASK16:
                    self._note_max_sample_size(ts, c.ts)
                self._insert_after(c, p)
                break

    @staticmethod
    def _insert_after(c: _Node, p: _Node) -> None:
        c.next.prev = p
        p.next = c.next
        p.prev = c
        c.next = p

    # -- pop ----------------------------------------------------------------

    def _force_pop(self) -> List[RtpPacket]:
        packets: List[RtpPacket] = []
        c = self._head
        while c is not None:
            nxt = c.next
            if not c.padding:
                packets.append(c.packet)
                self._stats.packets_popped += 1
            if c.end:
                self._stats.samples_popped += 1
            self._free(c)
            c = nxt
        self._head = None
        self._tail = None
        return packets

    def _force_pop_samples(self) -> List[List[RtpPacket]]:
        samples: List[List[RtpPacket]] = []
        sample: List[RtpPacket] = []
        c = self._head
        while c is not None:
            nxt = c.next
            if c.start and sample:
                self._stats.samples_popped += 1
                samples.append(sample)
                sample = []
            if not c.padding:
                sample.append(c.packet)
                self._stats.packets_popped += 1
            if c.end:
                self._stats.samples_popped += 1
                samples.append(sample)
                sample = []
            self._free(c)
            c = nxt
        self._head = None
        self._tail = None
        return samples

    def _ready_end(self) -> Optional[_Node]:
        if not self._initialized:
            return None
        self._drop()
        if self._head is None or not self._head.start:
            return None
        return self._get_end()

    def _pop(self) -> List[RtpPacket]:
        return [packet for sample in self._pop_samples() for packet in sample]

    def _pop_samples(self) -> List[List[RtpPacket]]:
        end = self._ready_end()
        if end is None:
            return []

        samples: List[List[RtpPacket]] = []
        sample: List[RtpPacket] = []
        c = self._head
        while True:
            nxt = c.next
            if nxt is not None:
                if _outside_range(nxt.sn, c.sn):
                    # account for the sequence number reset
                    self._min_ts = (
                        self._min_ts + nxt.ts - c.ts - self._max_sample_size
                    ) & _MASK32
                nxt.prev = None

            if not c.padding:
                sample.append(c.packet)
                self._stats.packets_popped += 1
            if c.end:
                self._stats.samples_popped += 1
                samples.append(sample)
                sample = []

            if c is end:
                self._prev_sn = c.sn
                self._head = nxt
                if nxt is None:
                    self._tail = None
                self._free(c)
                return samples

            self._free(c)
            c = nxt

    def _get_end(self) -> Optional[_Node]:
        prev_sn = self._prev_sn
        prev_complete = True
        end: Optional[_Node] = None
        c = self._head
        while c is not None:
            if c.sn != (prev_sn + 1) & _MASK16 and (
                not prev_complete
                or not c.reset
                or not _before32((c.ts - self._max_sample_size) & _MASK32, self._min_ts)
            ):
                break
            prev_complete = False
            if c.end:
                end = c
                prev_complete = True
            prev_sn = c.sn
            c = c.next
        return end

    # -- dropping -----------------------------------------------------------

    def _drop(self) -> None:
        head = self._head
        if head is None:
            return

        dropped = False
        mss = self._max_sample_size

        if head.sn != (self._prev_sn + 1) & _MASK16 and (
            (head.start and _before32((head.ts - mss) & _MASK32, self._min_ts))
            or (not head.start and _before32(head.ts, self._min_ts))
        ):
            # missing packets would now be too old even if they arrived;
            # after a sequence number reset, loss is unknown so it is not reported
            if not head.reset:
                dropped = True
                self._stats.packets_dropped += 1

            while (
                self._head is not None
                and not self._head.start
                and _before32((self._head.ts - mss) & _MASK32, self._min_ts)
            ):
                dropped = True
                self._stats.packets_dropped += 1
                self._prev_sn = (self._head.sn - 1) & _MASK16
                self._drop_head()

            if self._head is not None:
                self._prev_sn = (self._head.sn - 1) & _MASK16

        c = self._head
        while c is not None:
            if (c.start and _before32(self._min_ts, c.ts)) or (
                not c.start and not _before32(c.ts, self._min_ts)
            ):
                break
            # drop every packet of this sample
            dropped = True
            ts = c.ts
            while True:
                self._stats.packets_dropped += 1
                self._drop_head()
                c = self._head
                if c is None or c.ts != ts:
                    break

        if dropped:
            self._logger.debug("jitter buffer dropped packets")
            if self._on_packet_dropped is not None:
                self._on_packet_dropped()

    def _drop_head(self) -> None:
        c = self._head
        self._prev_sn = c.sn
        self._head = c.next
        if self._head is None:
            self._tail = None
        else:
            self._head.prev = None
            if _outside_range(self._head.sn, c.sn):
                self._min_ts = (
                    self._min_ts + self._head.ts - c.ts - self._max_sample_size
                ) & _MASK32
        self._free(c)

    @staticmethod
    def _free(node: _Node) -> None:
        node.prev = None
        node.next = None