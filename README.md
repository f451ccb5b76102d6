# lkmedia

Building blocks for handling real-time media streams in pure Python, with no
runtime dependencies.

## Modules

- `lkmedia.rtp`: the `RtpPacket` dataclass (sequence numbers wrap at 16 bits,
  timestamps at 32 bits), the frozen `Sample` dataclass (`data` and
  `duration_ns`, with a `duration` property as a `timedelta`), and the
  `Depacketizer` base class. The base `Depacketizer` passes payloads through
  unchanged, treats a payload as a frame head when it starts with `head_bytes`,
  and treats the marker bit (or every packet, with `every_packet_is_tail=True`)
  as a frame tail. Any object with `unmarshal`, `is_partition_head` and
  `is_partition_tail` methods can be used in its place.
- `lkmedia.samplebuilder`: `SampleBuilder` reorders incoming packets in a
  circular buffer and assembles complete samples. `pop`, `pop_with_timestamp`
  and `pop_packets` return only ready frames; `force_pop_with_timestamp` and
  `force_pop_packets` drop incomplete frames that are in the way. Optional
  `packet_release_handler` and `packet_dropped_handler` callbacks report
  released packets and losses. `check()` raises `RuntimeError` if the buffer's
  internal invariants are broken.
- `lkmedia.jitter`: `JitterBuffer`, a latency-bounded reordering buffer.
  `max_latency` is a `timedelta` or a number of seconds. `pop(force)` returns
  the packets of ready samples, `pop_samples(force)` returns them grouped per
  sample, `stats()` returns a `BufferStats` snapshot and `packet_loss()` the
  ratio of dropped to pushed packets.
- `lkmedia.oggreader`: `OggReader` parses the Opus identification header
  (exposed as `header`, an `OggHeader`) and then returns one Opus packet at a
  time from `read_packet()`, raising `EOFError` at the end of the stream; it can
  also be iterated. Page checksums are verified unless `do_checksum=False`.
  `parse_packet_duration` returns an Opus packet's duration in nanoseconds and
  raises `InvalidPacketError` for a malformed packet. Malformed streams raise
  `OggError`.
- `lkmedia.interceptor`: `PacketPool` hands out reusable `bytearray` buffers
  from pools of fixed sizes; `LimitSizeInterceptor.bind_local_stream` wraps a
  writer callable so that payloads larger than `MAX_PAYLOAD_SIZE` (1200 bytes)
  raise `PayloadTooLargeError`.
- `lkmedia.region`: `RegionUrlProvider` fetches the region list of a cloud
  host over HTTPS (cached for three seconds per host) and `pop_best_url`
  removes and returns the best URL, raising `LookupError` when none are left.
  `parse_cloud_url` returns the hostname of a cloud server URL or raises
  `ValueError`; `is_cloud` checks a hostname.
- `lkmedia.attributes`: `attribute_changes(old, cur)` returns the added,
  changed and deleted keys between two attribute maps, deleted keys mapping
  to `""`.
- `lkmedia.synchronizer`: `Synchronizer` keeps tracks on one timeline.
  `add_track(track, identity)` takes any object with `id`, `kind` (a
  `CodecKind` or `"audio"`/`"video"`), `ssrc`, `clock_rate` and optionally
  `mime_type`, and returns a `TrackSynchronizer`. Its `get_pts` returns
  presentation timestamps in nanoseconds, raising `BackwardsPTSError` for
  packets that go back in time and `EOFError` after `Synchronizer.end()`.
  `insert_frame` and `insert_frame_before` rewrite a packet into an inserted
  blank frame. `SenderReport` objects passed to `on_rtcp` align the tracks of
  one participant; `ntp_to_unix_ns` converts NTP timestamps.

## Installation

```
pip install lkmedia
```

## Examples

Assembling a sample:

```python
from lkmedia.rtp import Depacketizer, RtpPacket
from lkmedia.samplebuilder import SampleBuilder

builder = SampleBuilder(10, Depacketizer(head_bytes=b"\xaa"), 90000)
builder.push(RtpPacket(sequence_number=1, timestamp=3000, payload=b"\xaa\x01"))
builder.push(RtpPacket(sequence_number=2, timestamp=3000, payload=b"\x02", marker=True))
sample = builder.pop()
print(sample.data)  # b'\xaa\x01\x02'
```

Reading Opus packets from a file:

```python
from lkmedia.oggreader import OggReader, parse_packet_duration

with open("audio.ogg", "rb") as stream:
    for packet in OggReader(stream):
        print(len(packet), parse_packet_duration(packet))
```

Computing attribute changes:

```python
from lkmedia.attributes import attribute_changes

attribute_changes({"a": "1", "b": "2"}, {"a": "2", "c": "3"})
# {"a": "2", "b": "", "c": "3"}
```

## What this package does not do

It has no networking for media: it does not open peer connections, speak a
signalling protocol, send or receive RTP/RTCP, or model rooms and
participants. It does not depacketize any particular codec; supply a
`Depacketizer` subclass for that. The only network access is the HTTPS
request made by `RegionUrlProvider.refresh_region_settings`. There is no
command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```