"""Tests for the event decoder — wire unit normalization and malformed batches."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from notifyme.exposure.config_loader import ExposureConfig
from notifyme.exposure.decoder import EventDecoder, ProblematicEventWrapper
from notifyme.exposure.errors import DecodeError


def _wire_batch(*entries: tuple[bytes, int, int, bytes]) -> bytes:
    wrapper = ProblematicEventWrapper()
    for key, start, end, message in entries:
        event = wrapper.events.add()
        event.secretKey = key
        event.startTime = start
        event.endTime = end
        event.message = message
    return wrapper.SerializeToString()


@pytest.fixture
def decoder(exposure_config: ExposureConfig) -> EventDecoder:
    return EventDecoder(exposure_config)


class TestDecode:
    def test_empty_body_is_empty_batch(self, decoder: EventDecoder) -> None:
        assert decoder.decode(b"") == []

    def test_fields_are_passed_through(self, decoder: EventDecoder) -> None:
        raw = _wire_batch((b"\x01\x02\x03", 1_760_000_000_000, 1_760_003_600_000, b"msg"))
        [event] = decoder.decode(raw)
        assert event.private_key == b"\x01\x02\x03"
        assert event.message == b"msg"

    def test_milliseconds_are_divided_to_seconds(self, decoder: EventDecoder) -> None:
        raw = _wire_batch((b"k", 1_760_000_000_000, 1_760_003_600_000, b""))
        [event] = decoder.decode(raw)
        assert event.window_start == datetime.fromtimestamp(1_760_000_000, tz=timezone.utc)
        assert event.window_end == datetime.fromtimestamp(1_760_003_600, tz=timezone.utc)
        assert event.window_start.tzinfo is not None

    def test_sub_second_part_is_truncated(self, decoder: EventDecoder) -> None:
        raw = _wire_batch((b"k", 1_760_000_000_999, 1_760_000_001_500, b""))
        [event] = decoder.decode(raw)
        assert event.window_start.timestamp() == 1_760_000_000
        assert event.window_end.timestamp() == 1_760_000_001

    def test_preserves_wire_order(self, decoder: EventDecoder) -> None:
        raw = _wire_batch(
            (b"b", 2_000_000, 3_000_000, b""),
            (b"a", 1_000_000, 2_000_000, b""),
        )
        assert [e.private_key for e in decoder.decode(raw)] == [b"b", b"a"]

    def test_encode_is_readable_by_decode(self, decoder: EventDecoder) -> None:
        raw = _wire_batch((b"k", 1_760_000_000_000, 1_760_003_600_000, b"m"))
        events = decoder.decode(raw)
        assert decoder.decode(decoder.encode(events)) == events


class TestDecodeErrors:
    def test_garbage_raises_decode_error(self, decoder: EventDecoder) -> None:
        with pytest.raises(DecodeError):
            decoder.decode(b"\xff\xff\xff\xff")

    def test_truncated_batch_raises_decode_error(self, decoder: EventDecoder) -> None:
        raw = _wire_batch((b"key-material", 1_000_000, 2_000_000, b"message"))
        with pytest.raises(DecodeError):
            decoder.decode(raw[:-3])

    def test_end_before_start_rejects_whole_batch(self, decoder: EventDecoder) -> None:
        raw = _wire_batch(
            (b"ok", 1_000_000, 2_000_000, b""),
            (b"bad", 5_000_000, 4_000_000, b""),
        )
        with pytest.raises(DecodeError):
            decoder.decode(raw)
