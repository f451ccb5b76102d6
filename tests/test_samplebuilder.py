import pytest

from lkmedia.rtp import Depacketizer, RtpPacket
from lkmedia.samplebuilder import SampleBuilder

SECOND = 1_000_000_000
DEFAULT_PACKET_SIZE = 200
HEADER_BYTES = b"\xaa\xaa"


class PrefixDepacketizer(Depacketizer):
    def __init__(self, head_bytes=None):
        self.head_bytes = head_bytes

    def is_partition_head(self, payload):
        if self.head_bytes is None or len(payload) < len(self.head_bytes):
            return False
        return payload[: len(self.head_bytes)] == self.head_bytes

    def is_partition_tail(self, marker, payload):
        return marker


class FakeDepacketizer(Depacketizer):
    def __init__(self, head_checker=None, tail_checker=None):
        self.head_checker = head_checker
        self.tail_checker = tail_checker

    def is_partition_head(self, payload):
        return self.head_checker(payload) if self.head_checker else False

    def is_partition_tail(self, marker, payload):
        return self.tail_checker(payload, marker) if self.tail_checker else False


def always(*_):
    return True


def plain_packet(sn):
    return RtpPacket(sequence_number=sn, payload=bytes(DEFAULT_PACKET_SIZE))


def head_packet(sn):
    payload = HEADER_BYTES + bytes(DEFAULT_PACKET_SIZE - len(HEADER_BYTES))
    return RtpPacket(sequence_number=sn, payload=payload)


def tail_packet(sn):
    return RtpPacket(sequence_number=sn, marker=True, payload=bytes(DEFAULT_PACKET_SIZE))


def test_out_of_order_packets():
    sb = SampleBuilder(10, PrefixDepacketizer(), 30)
    sb.push(plain_packet(5))
    assert sb.pop() is None
    sb.push(plain_packet(3))
    sb.push(plain_packet(1))
    assert sb.pop() is None
    sb.check()
    sb.push(plain_packet(2))
    sb.push(plain_packet(4))
    sb.check()
    assert sb.pop_packets() is None


def test_does_not_pop_missing_packets():
    sb = SampleBuilder(10, PrefixDepacketizer(), 30)
    sb.push(head_packet(1))
    sb.push(plain_packet(5))
    assert sb.pop() is None


def test_assembles_samples():
    sb = SampleBuilder(10, PrefixDepacketizer(HEADER_BYTES), 30)
    sb.push(plain_packet(2))
    sb.push(head_packet(1))
    sb.push(tail_packet(3))
    sb.push(head_packet(4))
    sb.push(tail_packet(5))
    sb.push(head_packet(6))
    sb.check()

    sample = sb.pop()
    assert sample is not None
    assert len(sample.data) == DEFAULT_PACKET_SIZE * 3
    assert sample.data[0] == HEADER_BYTES[0]

    sample2 = sb.pop()
    assert sample2 is not None
    assert len(sample2.data) == DEFAULT_PACKET_SIZE * 2


def _pkts(*spec):
    return [RtpPacket(sequence_number=sn, timestamp=ts, payload=bytes([b])) for sn, ts, b in spec]


TABLE = [
    pytest.param(
        _pkts((5000, 5, 0x01)), 50, None, None, [], [], id="One"
    ),
    pytest.param(
        _pkts((5000, 5, 0x01)), 50, b"\x01", always, [(b"\x01", 0)], [5],
        id="OnePartitionCheckerTrue",
    ),
    pytest.param(
        _pkts((5000, 5, 0x01), (5001, 6, 0x02), (5002, 7, 0x03)), 50, None, None,
        [(b"\x02", SECOND)], [6], id="Sequential",
    ),
    pytest.param(
        _pkts((5000, 5, 0x01), (5001, 6, 0x02), (5002, 6, 0x03), (5003, 7, 0x04)),
        50, None, None, [(b"\x02\x03", SECOND)], [6], id="Duplicate",
    ),
    pytest.param(
        _pkts((5000, 5, 0x01), (5007, 6, 0x02), (5008, 7, 0x03)), 50, None, None,
        [], [], id="Gap",
    ),
    pytest.param(
        _pkts((5000, 5, 0x01), (5007, 6, 0x02), (5008, 7, 0x03)), 5, b"\x02", None,
        [(b"\x02", SECOND)], [6], id="GapPartitionHeadCheckerTrue",
    ),
    pytest.param(
        _pkts((5000, 5, 0x01), (5007, 6, 0x02), (5008, 7, 0x03)), 5, b"", None,
        [], [], id="GapPartitionHeadCheckerFalse",
    ),
    pytest.param(
        _pkts((5000, 1, 1), (5001, 2, 2), (5002, 3, 3), (5003, 4, 4), (5004, 5, 5), (5005, 6, 6)),
        5, None, None,
        [(b"\x02", SECOND), (b"\x03", SECOND), (b"\x04", SECOND), (b"\x05", SECOND)],
        [2, 3, 4, 5], id="Multiple",
    ),
    pytest.param(
        _pkts((5000, 1, 1), (5003, 4, 4), (5002, 3, 3), (5004, 5, 5), (5005, 6, 6), (5001, 2, 2)),
        5, None, None,
        [(b"\x02", SECOND), (b"\x03", SECOND), (b"\x04", SECOND), (b"\x05", SECOND)],
        [2, 3, 4, 5], id="MultipleDisordered",
    ),
    pytest.param(
        _pkts((5002, 3, 3), (5003, 4, 4), (5004, 5, 5), (5005, 6, 6), (5000, 1, 1), (5001, 2, 2)),
        8, None, None,
        [(b"\x02", SECOND), (b"\x03", SECOND), (b"\x04", SECOND), (b"\x05", SECOND)],
        [2, 3, 4, 5], id="MultipleDisordered2",
    ),
    pytest.param(
        _pkts((5000, 5, 0x01), (5001, 6, 0x02), (5002, 7, 0x03)), 50, None, always,
        [(b"\x02", SECOND), (b"\x03", SECOND)], [6, 7], id="PartitionTailChecker",
    ),
    pytest.param(
        _pkts((5000, 5, 0x01), (5001, 6, 0x02), (5002, 7, 0x03)), 50, b"\x01", always,
        [(b"\x01", 0), (b"\x02", SECOND), (b"\x03", SECOND)], [5, 6, 7], id="Checkers",
    ),
]


@pytest.mark.parametrize(
    "packets,max_late,head_bytes,tail_checker,expected_samples,expected_timestamps", TABLE
)
def test_samplebuilder_table(
    packets, max_late, head_bytes, tail_checker, expected_samples, expected_timestamps
):
    heads = head_bytes or b""
    sb = SampleBuilder(
        max_late,
        FakeDepacketizer(head_checker=lambda data: data[0] in heads, tail_checker=tail_checker),
        1,
    )
    for p in packets:
        sb.push(p)
        sb.check()
    samples, timestamps = [], []
    while True:
        sample, ts = sb.force_pop_with_timestamp()
        sb.check()
        if sample is None:
            break
        samples.append((sample.data, sample.duration_ns))
        timestamps.append(ts)
    assert samples == expected_samples
    assert timestamps == expected_timestamps


def _packet(k):
    return RtpPacket(sequence_number=k, timestamp=k + 42, payload=bytes([k & 0xFF]))


def test_sequential():
    sb = SampleBuilder(10, FakeDepacketizer(), 1)
    j = 0
    for i in range(0x20000):
        sb.push(_packet(i))
        sb.check()
        while True:
            sample, ts = sb.pop_with_timestamp()
            sb.check()
            if sample is None:
                break
            assert ts == (j + 43) & 0xFFFFFFFF
            assert len(sample.data) == 1
            assert sample.data[0] == (j + 1) & 0xFF
            j += 1
    assert j == 0x1FFFE


def test_loss():
    sb = SampleBuilder(10, FakeDepacketizer(), 1)
    popped = []
    for i in range(0x20000):
        if i % 3 == 2:
            continue
        sb.push(_packet(i))
        sb.check()
        while True:
            sample, ts = sb.pop_with_timestamp()
            sb.check()
            if sample is None:
                assert ts == 0
                break
            popped.append((sample, ts))
    # packets are discontiguous and there is no partition checker
    assert popped == []


def test_loss_checker():
    sb = SampleBuilder(10, FakeDepacketizer(always, always), 1)
    j = 0
    for i in range(0x20000):
        if i % 3 == 2:
            continue
        sb.push(_packet(i))
        sb.check()
        while True:
            sample, ts = sb.pop_with_timestamp()
            sb.check()
            if sample is None:
                break
            k = j // 2 * 3 + j % 2
            assert ts == (k + 42) & 0xFFFFFFFF
            assert len(sample.data) == 1
            assert sample.data[0] == k & 0xFF
            j += 1
    assert j == 0x1FFFE // 3 * 2 - 4


def _disordered(i):
    return i ^ 2 if i % 4 in (1, 3) else i


def test_disordered():
    sb = SampleBuilder(10, FakeDepacketizer(), 1)
    j = 0
    for i in range(0x20000):
        sb.push(_packet(_disordered(i)))
        sb.check()
        while True:
            sample, ts = sb.pop_with_timestamp()
            sb.check()
            if sample is None:
                break
            assert ts == (j + 43) & 0xFFFFFFFF
            assert len(sample.data) == 1
            assert sample.data[0] == (j + 1) & 0xFF
            j += 1
    assert j == 0x1FFFE


def test_disordered_checker():
    sb = SampleBuilder(10, FakeDepacketizer(always, always), 1)
    j = 0
    for i in range(0x20000):
        sb.push(_packet(_disordered(i)))
        sb.check()
        while True:
            sample, ts = sb.pop_with_timestamp()
            sb.check()
            if sample is None:
                break
            assert ts == (j + 42) & 0xFFFFFFFF
            assert len(sample.data) == 1
            assert sample.data[0] == j & 0xFF
            j += 1
    assert j == 0x20000


def test_disordered_loss_checker():
    sb = SampleBuilder(10, FakeDepacketizer(always, always), 1)
    j = 0
    previous = 42
    for i in range(0x20000):
        if i % 5 == 2:
            continue
        sb.push(_packet(_disordered(i)))
        sb.check()
        while True:
            sample, ts = sb.pop_with_timestamp()
            sb.check()
            if sample is None:
                break
            assert (ts - previous) & 0xFFFFFFFF <= 2
            previous = ts
            assert len(sample.data) == 1
            assert sample.data[0] == (ts - 42) & 0xFF
            j += 1
    assert j == 0x20000 * 4 // 5 - 7


def test_full():
    sb = SampleBuilder(10, FakeDepacketizer(), 1)
    sb.push(RtpPacket(sequence_number=5000, timestamp=5, payload=b"\x00"))
    for i in range(5001, 5100):
        sb.push(RtpPacket(sequence_number=i, timestamp=5, payload=b"\x01"))
        sb.check()
    sample, _ = sb.force_pop_with_timestamp()
    sb.check()
    assert sample is None


def test_force():
    def zero(body, *_):
        return body[0] == 0

    sb = SampleBuilder(20, FakeDepacketizer(zero, zero), 1)
    for i, ts in enumerate([1, 2, 2, 3, 0, 3, 4, 4, 5]):
        if ts == 0:
            continue
        sb.push(RtpPacket(sequence_number=i, timestamp=ts, payload=bytes([i])))
        sb.check()

    normal = []
    while True:
        sample, ts = sb.pop_with_timestamp()
        sb.check()
        if sample is None:
            break
        normal.append(ts)
    assert normal == [1, 2]

    forced = []
    while True:
        sample, ts = sb.force_pop_with_timestamp()
        sb.check()
        if sample is None:
            break
        forced.append(ts)
    assert forced == [4]


def test_release_handler_sees_every_popped_packet():
    released = []
    sb = SampleBuilder(10, FakeDepacketizer(always, always), 1, packet_release_handler=released.append)
    pushed = [_packet(k) for k in range(5)]
    for p in pushed:
        sb.push(p)
    while sb.force_pop_with_timestamp()[0] is not None:
        pass
    assert released == pushed


def test_duplicate_is_handed_to_release_handler():
    released = []
    sb = SampleBuilder(10, FakeDepacketizer(), 1, packet_release_handler=released.append)
    sb.push(_packet(1))
    sb.push(_packet(3))
    duplicate = _packet(1)
    sb.push(duplicate)
    assert released == [duplicate]


def test_dropped_handler_reports_loss():
    drops = []
    sb = SampleBuilder(5, FakeDepacketizer(), 1, packet_dropped_handler=lambda: drops.append(1))
    for p in _pkts((5000, 5, 1), (5007, 6, 2), (5008, 7, 3)):
        sb.push(p)
    assert sb.force_pop_with_timestamp() == (None, 0)
    assert len(drops) >= 1


def test_pop_packets_returns_frame_in_order():
    sb = SampleBuilder(10, PrefixDepacketizer(HEADER_BYTES), 30)
    sb.push(tail_packet(3))
    sb.push(head_packet(1))
    sb.push(plain_packet(2))
    frame = sb.force_pop_packets()
    assert [p.sequence_number for p in frame] == [1, 2, 3]
    assert sb.force_pop_packets() is None


def test_base_depacketizer_head_prefix_and_tail():
    base = Depacketizer()
    assert base.is_partition_head(b"\xaa\xaa\x00") is False
    assert base.is_partition_tail(True, b"") is True
    assert base.is_partition_tail(False, b"") is False

    prefixed = Depacketizer(head_bytes=HEADER_BYTES, every_packet_is_tail=True)
    assert prefixed.is_partition_head(b"\xaa\xaa\x00") is True
    assert prefixed.is_partition_head(b"\xaa") is False
    assert prefixed.is_partition_tail(False, b"") is True
    assert prefixed.unmarshal(bytearray(b"\x01\x02")) == b"\x01\x02"