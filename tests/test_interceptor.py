import pytest

from lkmedia.interceptor import (
    MAX_PAYLOAD_SIZE,
    LimitSizeInterceptor,
    PacketPool,
    PayloadTooLargeError,
)


def _recording_writer(calls):
    def writer(header, payload, attributes):
        calls.append((header, payload, attributes))
        return len(payload)

    return writer


def test_limit_passes_payload_at_limit():
    calls = []
    write = LimitSizeInterceptor().bind_local_stream(None, _recording_writer(calls))
    payload = bytes(MAX_PAYLOAD_SIZE)
    assert write("hdr", payload, {"k": 1}) == MAX_PAYLOAD_SIZE
    assert calls == [("hdr", payload, {"k": 1})]


def test_limit_rejects_oversized_payload():
    calls = []
    write = LimitSizeInterceptor().bind_local_stream(None, _recording_writer(calls))
    with pytest.raises(PayloadTooLargeError, match="1200"):
        write("hdr", bytes(MAX_PAYLOAD_SIZE + 1), None)
    assert calls == []


def test_pool_uses_smallest_fitting_buffer():
    pool = PacketPool(500, 1500)
    buffer, owner = pool.get(100)
    assert len(buffer) == 500
    assert owner.size == 500
    buffer, owner = pool.get(1000)
    assert len(buffer) == 1500
    assert owner.size == 1500


def test_pool_reuses_returned_buffer():
    pool = PacketPool(500, 1500)
    buffer, owner = pool.get(400)
    owner.put(buffer)
    again, _ = pool.get(400)
    assert again is buffer


def test_pool_falls_back_to_exact_size():
    pool = PacketPool(500, 1500)
    buffer, owner = pool.get(2000)
    assert len(buffer) == 2000
    assert owner is None