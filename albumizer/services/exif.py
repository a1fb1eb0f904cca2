# albumizer/services/exif.py
# Image codec: rewrite the EXIF block of a JPEG/WebP in memory.
# - piexif does the tag surgery; the compressed image data is copied untouched
# - Pillow re-opens the result as a sanity check before it is accepted
# - Deterministic: same input + same values -> same bytes, and re-applying is a no-op

from __future__ import annotations

import io
import logging
import struct
from datetime import datetime, timezone, tzinfo
from typing import Optional, Tuple

import piexif
from piexif.helper import UserComment
from PIL import Image, UnidentifiedImageError

from albumizer.core.errors import MetadataWriteError
from albumizer.schemas.media import AuthoritativeValues, GeoPoint

log = logging.getLogger(__name__)

EXIF_DT_FMT = "%Y:%m:%d %H:%M:%S"
GPS_SECONDS_DENOMINATOR = 10000
GPS_VERSION = (2, 2, 0, 0)

Rational = Tuple[int, int]


def _empty_exif() -> dict:
    return {"0th": {}, "Exif": {}, "GPS": {}, "Interop": {}, "1st": {}, "thumbnail": None}


# ---------- Value conversion ----------

def format_exif_datetime(dt: datetime, tz: tzinfo = timezone.utc) -> str:
    """EXIF DateTime text; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz).strftime(EXIF_DT_FMT)


def to_dms(value: float) -> Tuple[Rational, Rational, Rational]:
    """
    Absolute degrees -> ((deg,1), (min,1), (sec*10000,10000)).
    Works in integer ten-thousandths of a second so rounding never yields 60".
    """
    total = round(abs(value) * 3600 * GPS_SECONDS_DENOMINATOR)
    deg, rem = divmod(total, 3600 * GPS_SECONDS_DENOMINATOR)
    minutes, secs = divmod(rem, 60 * GPS_SECONDS_DENOMINATOR)
    return (deg, 1), (minutes, 1), (secs, GPS_SECONDS_DENOMINATOR)


def from_dms(dms, ref: Optional[bytes] = None) -> float:
    """Inverse of to_dms; a S/W ref makes the result negative."""
    deg, minutes, secs = (n / d for n, d in dms)
    value = deg + minutes / 60 + secs / 3600
    if ref in (b"S", b"W", "S", "W"):
        value = -value
    return value


def gps_tags(point: GeoPoint) -> dict:
    """GPS IFD entries for a point: magnitude as DMS, sign as the N/S, E/W ref."""
    return {
        piexif.GPSIFD.GPSVersionID: GPS_VERSION,
        piexif.GPSIFD.GPSLatitudeRef: b"N" if point.latitude >= 0 else b"S",
        piexif.GPSIFD.GPSLatitude: to_dms(point.latitude),
        piexif.GPSIFD.GPSLongitudeRef: b"E" if point.longitude >= 0 else b"W",
        piexif.GPSIFD.GPSLongitude: to_dms(point.longitude),
    }


# ---------- Codec ----------

def load_exif(data: bytes) -> dict:
    """Existing EXIF as a piexif dict; a fresh empty one if absent or unreadable."""
    try:
        exif = piexif.load(data)
    except (ValueError, struct.error, KeyError, IndexError) as e:
        log.debug("Existing EXIF unreadable (%s); starting a new block", e)
        return _empty_exif()
    for ifd in ("0th", "Exif", "GPS", "Interop", "1st"):
        exif.setdefault(ifd, {})
    exif.setdefault("thumbnail", None)
    return exif


def apply_values(exif: dict, values: AuthoritativeValues, tz: tzinfo = timezone.utc) -> dict:
    if values.capture_time is not None:
        stamp = format_exif_datetime(values.capture_time, tz).encode("ascii")
        exif["0th"][piexif.ImageIFD.DateTime] = stamp
        exif["Exif"][piexif.ExifIFD.DateTimeOriginal] = stamp
        exif["Exif"][piexif.ExifIFD.DateTimeDigitized] = stamp

    if values.geolocation is not None:
        exif["GPS"].update(gps_tags(values.geolocation))

    if values.caption:
        exif["0th"][piexif.ImageIFD.ImageDescription] = values.caption.encode("utf-8")
        exif["Exif"][piexif.ExifIFD.UserComment] = UserComment.dump(values.caption, encoding="unicode")

    return exif


IFD_NAMES = ("0th", "Exif", "GPS", "Interop", "1st")
DUMP_ERRORS = (ValueError, TypeError, KeyError, struct.error)

# UNDEFINED tags some cameras store as BYTE; piexif loads those as a bare int
SINGLE_BYTE_TAGS = (piexif.ExifIFD.SceneType, piexif.ExifIFD.FileSource)


def _coerce_known_tags(exif: dict) -> None:
    for tag in SINGLE_BYTE_TAGS:
        value = exif["Exif"].get(tag)
        if isinstance(value, int) and 0 <= value <= 0xFF:
            exif["Exif"][tag] = bytes([value])


def _tag_name(ifd: str, tag: int) -> str:
    return piexif.TAGS.get(ifd, {}).get(tag, {}).get("name", str(tag))


def _find_unencodable(exif: dict) -> Optional[Tuple[str, int]]:
    """First (ifd, tag) that piexif can't dump even on its own."""
    for ifd in IFD_NAMES:
        for tag, value in exif.get(ifd, {}).items():
            single = _empty_exif()
            single[ifd][tag] = value
            if ifd == "1st":
                single["thumbnail"] = exif.get("thumbnail")
            try:
                piexif.dump(single)
            except DUMP_ERRORS:
                return ifd, tag
    return None


def dump_exif(exif: dict) -> bytes:
    """piexif.dump, dropping only the existing tags it can't re-encode."""
    _coerce_known_tags(exif)
    while True:
        try:
            return piexif.dump(exif)
        except DUMP_ERRORS as e:
            bad = _find_unencodable(exif)
            if bad is not None:
                ifd, tag = bad
                log.warning("Dropping EXIF %s/%s (%r): can't be re-encoded", ifd, _tag_name(ifd, tag), exif[ifd][tag])
                del exif[ifd][tag]
            elif exif.get("1st") or exif.get("thumbnail") is not None:
                log.warning("Dropping the EXIF thumbnail: can't be re-encoded (%s)", e)
                exif["1st"], exif["thumbnail"] = {}, None
            else:
                raise MetadataWriteError(f"unable to encode EXIF: {e}") from e


def _verify(data: bytes) -> None:
    try:
        with Image.open(io.BytesIO(data)) as im:
            im.getexif()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise MetadataWriteError(f"rewritten image does not decode: {e}") from e


class ImageCodec:
    """EXIF rewriter for JPEG and WebP containers."""

    def __init__(self, tz: tzinfo = timezone.utc) -> None:
        self.tz = tz

    def apply_metadata(self, data: bytes, values: AuthoritativeValues) -> bytes:
        raw = dump_exif(apply_values(load_exif(data), values, self.tz))

        out = io.BytesIO()
        try:
            piexif.insert(raw, data, out)
        except (ValueError, OSError, struct.error) as e:
            raise MetadataWriteError(f"unable to insert EXIF: {e}") from e
        result = out.getvalue()
        _verify(result)
        return result
