"""Audio/video synchronisation of remote RTP tracks.

Each track converts RTP timestamps into presentation timestamps (PTS,
in nanoseconds from the moment the first track started). Sequence number
gaps and timestamp jumps reset the track's RTP timeline. RTCP sender
reports keep the tracks of one participant aligned on a common NTP start.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Tuple

from .rtp import RtpPacket

logger = logging.getLogger(__name__)

_MS = 1_000_000
_SECOND = 1_000_000_000

_EWMA_WEIGHT = 0.9
_MAX_ADJUSTMENT_NS = 15 * _MS
_MAX_TS_DIFF_NS = 60 * _SECOND
_MAX_SN_DROPOUT = 3000
_UINT32_HALF = 1 << 31
_UINT32_OVERFLOW = 1 << 32
_FIRST_REPORT_WAIT_NS = 5 * _SECOND
_NTP_EPOCH_OFFSET_S = 2_208_988_800
_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF
_MASK64 = (1 << 64) - 1


class BackwardsPTSError(Exception):
    """Raised when a packet would move the presentation time backwards."""

    def __init__(self) -> None:
        super().__init__("backwards pts")


class CodecKind(enum.Enum):
    """Media kind of a track."""

    AUDIO = "audio"
    VIDEO = "video"


@dataclass(frozen=True)
class SenderReport:
    """The fields of an RTCP sender report used for synchronisation."""

    ssrc: int
    ntp_time: int
    rtp_time: int
    packet_count: int = 0
    octet_count: int = 0


@dataclass
class TrackStats:
    """Running statistics of a track synchroniser.

    ``avg_sample_duration`` is in RTP clock units, ``avg_drift`` and
    ``max_drift`` in nanoseconds.
    """

    avg_sample_duration: float = 0.0
    avg_drift: float = 0.0
    max_drift: int = 0

    def _update_drift(self, drift: int) -> None:
        drift = abs(drift)
        self.avg_drift = _EWMA_WEIGHT * self.avg_drift + (1 - _EWMA_WEIGHT) * drift
        if drift > self.max_drift:
            self.max_drift = drift

    def _update_sample_duration(self, duration: int) -> None:
        if duration > 1:
            self.avg_sample_duration = (
                _EWMA_WEIGHT * self.avg_sample_duration + (1 - _EWMA_WEIGHT) * duration
            )


def ntp_to_unix_ns(ntp_time: int) -> int:
    """Convert a 64-bit NTP timestamp into nanoseconds since the Unix epoch."""
    seconds = (ntp_time >> 32) & _MASK32
    frac = (ntp_time & _MASK32) * _SECOND
    nsec = frac >> 32
    if frac & _MASK32 >= 0x80000000:
        nsec += 1
    return (seconds - _NTP_EPOCH_OFFSET_S) * _SECOND + nsec


def _to_int64(value: int) -> int:
    value &= _MASK64
    return value - (1 << 64) if value >= 1 << 63 else value


def _round_half_away(x: float) -> float:
    r = float(math.floor(abs(x) + 0.5))
    return r if x >= 0 else -r


@dataclass(frozen=True)
class _RtpConverter:
    n: int
    d: int

    @classmethod
    def for_clock_rate(cls, clock_rate: int) -> "_RtpConverter":
        n, d = _SECOND, clock_rate
        for i in (10, 3, 2):
            while n % i == 0 and d % i == 0:
                n //= i
                d //= i
        return cls(n, d)

    def to_duration(self, rtp_duration: int) -> int:
        # unsigned 64-bit arithmetic, as RTP durations are treated on the wire
        return _to_int64((((rtp_duration & _MASK64) * self.n) & _MASK64) // self.d)


class TrackSynchronizer:
    """Computes presentation timestamps for the packets of one track.

    Created by :meth:`Synchronizer.add_track`. Packets are expected in order.
    """

    def __init__(self, sync: "Synchronizer", track: Any) -> None:
        self._lock = threading.Lock()
        self._sync: Optional[Synchronizer] = sync
        self._track_id = track.id
        self._mime_type = getattr(track, "mime_type", "")
        self._kind = CodecKind(track.kind)
        self._clock_rate = int(track.clock_rate)
        self._converter = _RtpConverter.for_clock_rate(self._clock_rate)

        if self._kind is CodecKind.AUDIO:
            # opus default packet size is 20ms
            avg = self._clock_rate / 50
        else:
            # 30 fps for video
            avg = self._clock_rate / 30
        self._stats = TrackStats(avg_sample_duration=avg)

        self._last_sr = 0
        self._started_at: Optional[int] = None
        self._first_ts = 0
        self._max_pts = 0

        self._backwards = 0
        self._last_packet: Optional[int] = None
        self._last_sn = 0
        self._last_ts = 0
        self._last_pts = 0
        self._last_valid = False
        self._inserted = 0

        self._sn_offset = 0
        self._pts_offset = 0

    def initialize(self, packet: RtpPacket) -> None:
        """Record the first packet; call as soon as it is received."""
        now = time.time_ns()
        started_at = self._sync._get_or_set_started_at(now) if self._sync else now
        with self._lock:
            self._started_at = started_at
            self._first_ts = packet.timestamp
            self._pts_offset = now - started_at

    def get_pts(self, packet: RtpPacket) -> int:
        """Return the packet's presentation timestamp in nanoseconds.

        The packet's sequence number may be rewritten. Raises
        BackwardsPTSError for a packet that would go back in time, and
        EOFError for a packet past the end set by :meth:`Synchronizer.end`.
        """
        with self._lock:
            ts, pts, valid = self._adjust(packet)
            if pts < self._last_pts:
                if self._backwards == 0:
                    logger.warning(
                        "backwards pts on track %s: timestamp=%d sn=%d pts=%d "
                        "last_pts=%d last_ts=%d last_sn=%d",
                        self._track_id, packet.timestamp, packet.sequence_number,
                        pts, self._last_pts, self._last_ts, self._last_sn,
                    )
                self._backwards += 1
                raise BackwardsPTSError()
            if self._backwards > 0:
                logger.warning(
                    "track %s dropped %d packets with backwards pts",
                    self._track_id, self._backwards,
                )
                self._backwards = 0

            if (
                valid
                and self._last_valid
                and packet.sequence_number == (self._last_sn + 1) & _MASK16
            ):
                self._stats._update_sample_duration(ts - self._last_ts)

            if self._max_pts > 0 and (pts > self._max_pts or not valid):
                raise EOFError("track synchronizer reached its end")

            self._last_packet = time.time_ns()
            self._last_ts = ts
            self._last_sn = packet.sequence_number
            self._last_pts = pts
            self._last_valid = valid
            self._inserted = 0
            return pts

    def _adjust(self, packet: RtpPacket) -> Tuple[int, int, bool]:
        if self._last_packet is None:
            ts = packet.timestamp
            while ts < self._first_ts - _UINT32_HALF:
                ts += _UINT32_OVERFLOW
            return ts, self._get_pts(ts), True

        packet.sequence_number = (packet.sequence_number + self._sn_offset) & _MASK16
        sn = packet.sequence_number
        if (
            self._last_ts != 0
            and (sn - self._last_sn) & _MASK16 > _MAX_SN_DROPOUT
            and (self._last_sn - sn) & _MASK16 > _MAX_SN_DROPOUT
        ):
            self._sn_offset = (self._sn_offset + self._last_sn + 1 - sn) & _MASK16
            packet.sequence_number = (self._last_sn + 1) & _MASK16
            ts, pts = self._reset_rtp(packet, "SN gap")
            return ts, pts, False

        ts = packet.timestamp
        while ts < self._last_ts - _UINT32_HALF:
            ts += _UINT32_OVERFLOW

        if ts == self._last_ts:
            return ts, self._last_pts, self._last_valid

        pts = self._get_pts(ts)
        expected = time.time_ns() - (self._started_at + self._pts_offset)
        if pts > expected + _MAX_TS_DIFF_NS:
            ts, pts = self._reset_rtp(
                packet, f"pts out of bounds (pts={pts} expected={expected})"
            )
            return ts, pts, False
        return ts, pts, True

    def _get_pts(self, ts: int) -> int:
        return self._converter.to_duration(ts - self._first_ts) + self._pts_offset

    def _reset_rtp(self, packet: RtpPacket, reason: str) -> Tuple[int, int]:
        frame_duration = self._get_frame_duration()
        frames = (time.time_ns() - self._last_packet) // frame_duration
        duration = self._get_frame_duration_rtp() * frames
        ts = self._last_ts + duration
        pts = self._last_pts + self._converter.to_duration(duration)
        self._first_ts += packet.timestamp - ts

        logger.info(
            "resetting track synchronizer %s (%s): pkt_ts=%d pkt_sn=%d prev_ts=%d "
            "prev_sn=%d frame_duration=%d prev_pts=%d adjusted_ts=%d adjusted_pts=%d",
            self._track_id, reason, packet.timestamp, packet.sequence_number,
            self._last_ts, self._last_sn, frame_duration, self._last_pts, ts, pts,
        )
        return ts, pts

    def insert_frame(self, packet: RtpPacket) -> int:
        """Turn ``packet`` into an inserted (usually blank) frame and return its PTS.

        The packet's sequence number and timestamp are rewritten, and later
        packets are shifted to make room for it.
        """
        with self._lock:
            pts, _ = self._insert_frame_before(packet, None)
            return pts

    def insert_frame_before(
        self, packet: RtpPacket, next_packet: Optional[RtpPacket]
    ) -> Tuple[int, bool]:
        """Insert a frame only if it ends no later than ``next_packet``.

        Returns the PTS and whether the frame fits; ``(0, False)`` otherwise.
        """
        with self._lock:
            return self._insert_frame_before(packet, next_packet)

    def _insert_frame_before(
        self, packet: RtpPacket, next_packet: Optional[RtpPacket]
    ) -> Tuple[int, bool]:
        self._inserted += 1
        self._sn_offset = (self._sn_offset + 1) & _MASK16
        self._last_valid = False

        frame_duration_rtp = self._get_frame_duration_rtp()
        ts = self._last_ts + self._inserted * frame_duration_rtp
        if next_packet is not None:
            next_ts, _, _ = self._adjust(next_packet)
            if ts + frame_duration_rtp > next_ts:
                return 0, False

        packet.sequence_number = (self._last_sn + self._inserted) & _MASK16
        packet.timestamp = ts & _MASK32
        pts = self._last_pts + self._converter.to_duration(
            frame_duration_rtp * self._inserted
        )
        return pts, True

    def get_frame_duration(self) -> int:
        """Return the average frame duration in nanoseconds, rounded."""
        with self._lock:
            return self._get_frame_duration()

    def _get_frame_duration(self) -> int:
        avg = self._stats.avg_sample_duration
        if self._kind is CodecKind.AUDIO:
            # round opus packets to 2.5ms
            step = self._clock_rate / 400
            return int(_round_half_away(avg / step)) * 2_500_000
        # round video to 1/3000th of a second
        step = self._clock_rate / 3000
        return int(_round_half_away(_round_half_away(avg / step) * 1e6 / 3))

    def _get_frame_duration_rtp(self) -> int:
        if self._kind is CodecKind.AUDIO:
            step = self._clock_rate / 400
        else:
            step = self._clock_rate / 3000
        return int(_round_half_away(self._stats.avg_sample_duration / step) * step)

    def get_track_stats(self) -> TrackStats:
        """Return a copy of the track's statistics."""
        return replace(self._stats)

    def _sender_report_pts(self, report: SenderReport) -> int:
        with self._lock:
            return self._sender_report_pts_locked(report)

    def _sender_report_pts_locked(self, report: SenderReport) -> int:
        ts = report.rtp_time
        while ts < self._last_ts - _UINT32_OVERFLOW // 2:
            ts += _UINT32_OVERFLOW
        return self._get_pts(ts)

    def _on_sender_report(self, report: SenderReport, ntp_start: int) -> None:
        with self._lock:
            if report.rtp_time == self._last_sr or self._started_at is None:
                return
            pts = self._sender_report_pts_locked(report)
            calculated_start = ntp_to_unix_ns(report.ntp_time) - pts
            self._adjust_offset_locked(calculated_start - ntp_start)
            self._last_sr = report.rtp_time

    def _adjust_offset_locked(self, drift: int) -> None:
        if drift == 0:
            return
        self._stats._update_drift(drift)
        drift = max(-_MAX_ADJUSTMENT_NS, min(_MAX_ADJUSTMENT_NS, drift))
        self._pts_offset += drift


class _ParticipantSynchronizer:
    """Sender report bookkeeping for the tracks of one participant."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.ntp_start: Optional[int] = None
        self.first_report: Optional[int] = None
        self.tracks: Dict[int, TrackSynchronizer] = {}
        self.sender_reports: Dict[int, SenderReport] = {}

    def on_sender_report(self, report: SenderReport) -> None:
        with self.lock:
            if self.ntp_start is None:
                self._initialize(report)
            else:
                track = self.tracks.get(report.ssrc)
                if track is not None:
                    track._on_sender_report(report, self.ntp_start)

    def _initialize(self, report: SenderReport) -> None:
        now = time.time_ns()
        if self.first_report is None:
            self.first_report = now

        self.sender_reports[report.ssrc] = report
        if (
            len(self.sender_reports) < len(self.tracks)
            and now - self.first_report < _FIRST_REPORT_WAIT_NS
        ):
            return

        for ssrc, sr in self.sender_reports.items():
            track = self.tracks.get(ssrc)
            if track is not None:
                pts = track._sender_report_pts(sr)
                ntp_start = ntp_to_unix_ns(sr.ntp_time) - pts
                if self.ntp_start is None or ntp_start < self.ntp_start:
                    self.ntp_start = ntp_start

        for ssrc, sr in self.sender_reports.items():
            track = self.tracks.get(ssrc)
            if track is not None:
                track._on_sender_report(sr, self.ntp_start)

    def max_offset(self) -> int:
        with self.lock:
            offsets = []
            for track in self.tracks.values():
                with track._lock:
                    offsets.append(track._pts_offset)
        return max([0, *offsets])

    def drain(self, max_pts: int) -> None:
        with self.lock:
            for track in self.tracks.values():
                with track._lock:
                    track._max_pts = max_pts


class Synchronizer:
    """Keeps all audio and video tracks of a session on one timeline."""

    def __init__(self, on_started: Optional[Callable[[], None]] = None) -> None:
        self._lock = threading.RLock()
        self._started_at = 0
        self._on_started = on_started
        self._ended_at = 0
        self._ps_by_identity: Dict[str, _ParticipantSynchronizer] = {}
        self._ps_by_ssrc: Dict[int, _ParticipantSynchronizer] = {}
        self._ssrc_by_id: Dict[str, int] = {}

    def add_track(self, track: Any, identity: str) -> TrackSynchronizer:
        """Register a remote track of participant ``identity``.

        ``track`` provides ``id``, ``kind`` (a CodecKind or its value),
        ``ssrc``, ``clock_rate`` and ``mime_type``.
        """
        synchronizer = TrackSynchronizer(self, track)
        ssrc = int(track.ssrc)
        with self._lock:
            participant = self._ps_by_identity.get(identity)
            if participant is None:
                participant = _ParticipantSynchronizer()
                self._ps_by_identity[identity] = participant
            self._ssrc_by_id[track.id] = ssrc
            self._ps_by_ssrc[ssrc] = participant
        with participant.lock:
            participant.tracks[ssrc] = synchronizer
        return synchronizer

    def remove_track(self, track_id: str) -> None:
        """Forget a track; its sender reports are ignored from then on."""
        with self._lock:
            ssrc = self._ssrc_by_id.pop(track_id, 0)
            participant = self._ps_by_ssrc.pop(ssrc, None)
        if participant is None:
            return
        with participant.lock:
            track = participant.tracks.pop(ssrc, None)
            if track is not None:
                track._sync = None
            participant.sender_reports.pop(ssrc, None)

    def get_started_at(self) -> int:
        """Return the start time in Unix nanoseconds, or 0 if not started."""
        with self._lock:
            return self._started_at

    def _get_or_set_started_at(self, now: int) -> int:
        with self._lock:
            if self._started_at == 0:
                self._started_at = now
                if self._on_started is not None:
                    self._on_started()
            return self._started_at

    def on_rtcp(self, packet: Any) -> None:
        """Feed an RTCP packet; sender reports are used to sync tracks."""
        if not isinstance(packet, SenderReport):
            return
        with self._lock:
            participant = self._ps_by_ssrc.get(packet.ssrc)
            ended_at = self._ended_at
        if ended_at != 0 or participant is None:
            return
        participant.on_sender_report(packet)

    def end(self) -> None:
        """Set the end time and make every track stop after it."""
        end_time = time.time_ns()
        with self._lock:
            max_offset = max(
                [0, *(p.max_offset() for p in self._ps_by_identity.values())]
            )
            self._ended_at = end_time + max_offset
            max_pts = self._ended_at - self._started_at
            for participant in self._ps_by_identity.values():
                participant.drain(max_pts)

    def get_ended_at(self) -> int:
        """Return the end time in Unix nanoseconds, or 0 if not ended."""
        with self._lock:
            return self._ended_at