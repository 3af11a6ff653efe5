"""Ingest control protocol.

Control frames are JSON objects ``{"type": "start_stream", "streamKey"?}``
and ``{"type": "stop_stream"}``. Every other binary frame is raw media.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from relay_shared.domain.exceptions import MalformedControlFrame


class ControlType(str, Enum):
    """Recognised control commands."""

    START_STREAM = "start_stream"
    STOP_STREAM = "stop_stream"


@dataclass(frozen=True)
class ControlMessage:
    """A parsed control frame."""

    type: ControlType
    stream_key: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ControlMessage":
        """Build a control message from decoded JSON.

        Raises:
            MalformedControlFrame: If the object is not a known command
        """
        if not isinstance(data, dict):
            raise MalformedControlFrame("Control frame must be a JSON object", frame=data)
        try:
            control_type = ControlType(data.get("type"))
        except ValueError:
            raise MalformedControlFrame(
                f"Unknown control frame type {data.get('type')!r}", frame=data
            )

        stream_key = data.get("streamKey")
        if stream_key is not None and (not isinstance(stream_key, str) or not stream_key.strip()):
            raise MalformedControlFrame("streamKey must be a non-empty string", frame=data)
        if stream_key is not None and ("/" in stream_key or stream_key in (".", "..")):
            raise MalformedControlFrame("streamKey must not contain path separators", frame=data)

        title = data.get("title")
        if title is not None and not isinstance(title, str):
            title = None
        return cls(type=control_type, stream_key=stream_key, title=title)


Frame = Union[ControlMessage, bytes]


def parse_text_frame(text: str) -> ControlMessage:
    """Parse a text frame, which is always a control frame.

    Raises:
        MalformedControlFrame: If the text is not a valid control frame
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedControlFrame(f"Control frame is not JSON: {e}", frame=text) from e
    return ControlMessage.from_dict(data)


def parse_binary_frame(data: bytes, control_frame_max_bytes: int = 1000) -> Frame:
    """Classify a binary frame as control or media.

    Short frames that start with ``{`` and decode as JSON are control frames;
    anything that fails to decode is media. A frame that decodes as JSON but
    is not a known command raises.

    Raises:
        MalformedControlFrame: If JSON decodes but is not a known command
    """
    if len(data) >= control_frame_max_bytes or not data.startswith(b"{"):
        return data
    try:
        decoded = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return data
    return ControlMessage.from_dict(decoded)
