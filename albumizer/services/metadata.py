# albumizer/services/metadata.py
# One entry point for writing metadata, whatever the container:
#   codec_for(kind).apply_metadata(bytes, AuthoritativeValues) -> bytes
# plus the rules deciding which values are authoritative for an entry.

from __future__ import annotations

from datetime import timezone, tzinfo
from typing import Optional, Protocol

from albumizer.schemas.media import AuthoritativeValues, ContainerKind, MediaEntry
from albumizer.services.exif import ImageCodec
from albumizer.services.mp4 import VideoCodec

COMMENT_TIME_FMT = "%Y-%m-%d %I:%M:%S %p"


class Codec(Protocol):
    def apply_metadata(self, data: bytes, values: AuthoritativeValues) -> bytes: ...


def codec_for(kind: ContainerKind, tz: tzinfo = timezone.utc) -> Optional[Codec]:
    """The codec for a container kind; None for UNKNOWN (copy as-is)."""
    if kind == ContainerKind.IMAGE:
        return ImageCodec(tz)
    if kind == ContainerKind.VIDEO:
        return VideoCodec()
    return None


def compose_caption(entry: MediaEntry, include_comments: bool = True) -> Optional[str]:
    """
    Caption = description, then one line per comment:
        "text" -author (2021-01-01 09:30:00 PM)
    """
    lines = [entry.caption] if entry.caption else []
    if include_comments:
        for c in entry.comments:
            line = f'"{c.text}"'
            if c.author:
                line += f" -{c.author}"
            if c.timestamp is not None:
                line += f" ({c.timestamp.astimezone(timezone.utc).strftime(COMMENT_TIME_FMT)})"
            lines.append(line)
    return "\n".join(lines) or None


def authoritative_values(entry: MediaEntry, include_comments: bool = True) -> AuthoritativeValues:
    return AuthoritativeValues(
        capture_time=entry.capture_time,
        geolocation=entry.geolocation,
        caption=compose_caption(entry, include_comments),
    )
