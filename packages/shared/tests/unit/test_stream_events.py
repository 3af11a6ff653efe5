"""Tests for the stream event wire schema."""

from datetime import datetime

import pytest

from relay_shared.domain.events import EndReason, StreamEvent, StreamEventType
from relay_shared.domain.exceptions import MalformedEventError


class TestStreamEventSerialization:
    """Test the camelCase wire form."""

    def test_started_event_message(self):
        event = StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8", title="Launch")

        body = event.to_message()

        assert body["eventType"] == "STREAM_STARTED"
        assert body["streamKey"] == "abc"
        assert body["playlistUrl"] == "/hls/abc/playlist.m3u8"
        assert body["title"] == "Launch"
        assert "bytesReceived" not in body
        assert "reason" not in body
        # ISO-8601 string so any consumer can parse it
        assert datetime.fromisoformat(body["timestamp"]).tzinfo is not None

    def test_ended_event_message(self):
        event = StreamEvent.stream_ended(
            "abc",
            bytes_received=3145728,
            reason=EndReason.STOP_REQUESTED,
            dropped_chunks=2,
            dropped_bytes=4096,
            exit_code=0,
        )

        body = event.to_message()

        assert body["eventType"] == "STREAM_ENDED"
        assert body["bytesReceived"] == 3145728
        assert body["droppedChunks"] == 2
        assert body["droppedBytes"] == 4096
        assert body["reason"] == "stop_requested"
        assert body["exitCode"] == 0
        assert "playlistUrl" not in body

    def test_parse_round_trip_preserves_fields(self):
        original = StreamEvent.stream_ended("abc", 10, EndReason.ENCODER_EXITED, exit_code=1)

        parsed = StreamEvent.from_message(original.to_message())

        assert parsed.event_type == StreamEventType.STREAM_ENDED
        assert parsed.stream_key == "abc"
        assert parsed.bytes_received == 10
        assert parsed.reason == EndReason.ENCODER_EXITED
        assert parsed.exit_code == 1
        assert parsed.timestamp == original.timestamp

    def test_events_are_immutable(self):
        event = StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8")

        with pytest.raises(Exception):
            event.stream_key = "other"


class TestStreamEventParsing:
    """Test tolerant parsing of delivered messages."""

    def test_unknown_keys_are_kept(self):
        body = {
            "eventType": "STREAM_STARTED",
            "streamKey": "abc",
            "timestamp": "2024-01-01T00:00:00+00:00",
            "region": "eu-west",
        }

        event = StreamEvent.from_message(body)

        assert event.stream_key == "abc"
        assert event.to_message()["region"] == "eu-west"

    def test_timestamp_defaults_when_missing(self):
        event = StreamEvent.from_message({"eventType": "STREAM_ENDED", "streamKey": "abc"})

        assert event.timestamp is not None

    @pytest.mark.parametrize(
        "body",
        [
            "not-a-dict",
            ["STREAM_STARTED"],
            {"eventType": "STREAM_PAUSED", "streamKey": "abc"},
            {"eventType": "STREAM_STARTED"},
            {"eventType": "STREAM_STARTED", "streamKey": ""},
        ],
    )
    def test_malformed_bodies_raise(self, body):
        with pytest.raises(MalformedEventError) as exc_info:
            StreamEvent.from_message(body)

        assert exc_info.value.body == body
