# albumizer/services/manifest.py
# Manifest parser: turns the album JSON files of an export into MediaEntry records.
# - Lazy: one manifest file is read at a time; iter_entries() rescans from scratch
# - Tolerant: missing/odd fields degrade to None and mark the record PARTIAL
# - A broken manifest is reported and skipped; a missing root is fatal

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from albumizer.core.errors import ConfigError, ManifestError
from albumizer.schemas.media import Comment, GeoPoint, ManifestFailure, MediaEntry, RecordKind
from albumizer.utils.fs import walk_files
from albumizer.utils.text import fix_text

log = logging.getLogger(__name__)

DEFAULT_ALBUM_NAME = "Untitled"

# media lists inside an album document, in the order they are read
ITEM_LIST_KEYS = ("photos", "videos", "media", "items")

# formats seen in "timestamp_text" style fields; naive results are taken as UTC
_TEXT_FORMATS = (
    "%b %d, %Y, %I:%M %p",
    "%b %d, %Y %I:%M:%S %p",
    "%b %d, %Y %I:%M %p",
    "%B %d, %Y, %I:%M %p",
    "%b %d, %Y",
    "%B %d, %Y",
    "%Y:%m:%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


# ---------- Field decoders (pure) ----------

def epoch_to_datetime(value: Any) -> Optional[datetime]:
    """Numeric epoch seconds (int, float or numeric string) -> aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if value <= 0:
        return None  # 0 is the export's "unknown"
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp_text(text: Any) -> Optional[datetime]:
    """Best-effort parse of a human-readable timestamp."""
    if not isinstance(text, str):
        return None
    s = " ".join(text.split())
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        dt = None
        for fmt in _TEXT_FORMATS:
            try:
                dt = datetime.strptime(s, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def decode_timestamp(value: Any) -> Optional[datetime]:
    """
    Decode a manifest timestamp. Accepts a number, a numeric or textual string,
    or an object {"timestamp": n, "timestamp_text": "..."}.
    The numeric field always wins; text is only a fallback.
    """
    if isinstance(value, dict):
        numeric = epoch_to_datetime(value.get("timestamp"))
        text = value.get("timestamp_text", value.get("text"))
        if numeric is not None:
            parsed = parse_timestamp_text(text)
            if parsed is not None and parsed.date() != numeric.date():
                log.debug("timestamp %s disagrees with text %r; using the number", numeric.isoformat(), text)
            return numeric
        return parse_timestamp_text(text)
    numeric = epoch_to_datetime(value)
    if numeric is not None:
        return numeric
    return parse_timestamp_text(value)


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def decode_geo(value: Any) -> Optional[GeoPoint]:
    """{"latitude": .., "longitude": ..} (or lat/lon/lng) -> GeoPoint; (0, 0) counts as missing."""
    if not isinstance(value, dict):
        return None
    lat = _as_float(value.get("latitude", value.get("lat")))
    lon = _as_float(value.get("longitude", value.get("lon", value.get("lng"))))
    if lat is None or lon is None:
        return None
    if lat == 0 and lon == 0:
        return None
    try:
        return GeoPoint(latitude=lat, longitude=lon)
    except ValidationError:
        return None


def _metadata_blocks(item: dict) -> List[dict]:
    """media_metadata.{photo,video}_metadata and their exif_data rows, most specific first."""
    md = item.get("media_metadata")
    if not isinstance(md, dict):
        return []
    blocks: List[dict] = []
    for key in ("photo_metadata", "video_metadata"):
        block = md.get(key)
        if not isinstance(block, dict):
            continue
        rows = block.get("exif_data")
        if isinstance(rows, list):
            blocks.extend(r for r in rows if isinstance(r, dict))
        blocks.append(block)
    return blocks


def _clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    s = fix_text(value).strip()
    return s or None


def _decode_comments(value: Any) -> Tuple[Comment, ...]:
    if not isinstance(value, list):
        return ()
    out = []
    for c in value:
        if not isinstance(c, dict):
            continue
        text = _clean_text(c.get("comment", c.get("text")))
        if text is None:
            continue
        out.append(Comment(
            author=_clean_text(c.get("author")) or "",
            text=text,
            timestamp=decode_timestamp(c.get("timestamp")),
        ))
    return tuple(out)


def decode_item(item: dict, album_name: str, *, manifest_path: Optional[Path] = None,
                ordinal: int = 0) -> MediaEntry:
    """Decode one media record. Every missing-field case ends up in `missing`."""
    missing: List[str] = []

    uri = item.get("uri")
    source_reference = uri.strip() if isinstance(uri, str) and uri.strip() else None
    if source_reference is None:
        missing.append("uri")

    blocks = _metadata_blocks(item)

    # capture time: what the service recorded as "taken", then the creation stamp
    capture_time = None
    for block in blocks:
        capture_time = decode_timestamp(block.get("taken_timestamp"))
        if capture_time is not None:
            break
    if capture_time is None:
        raw = item.get("creation_timestamp", item.get("timestamp"))
        capture_time = decode_timestamp(raw)
    if capture_time is None:
        missing.append("capture_time")

    geo_candidates = [item.get("geolocation"), item.get("location"), *blocks]
    place = item.get("place")
    if isinstance(place, dict):
        geo_candidates.append(place.get("coordinate"))
    geolocation = None
    saw_geo = False
    for cand in geo_candidates:
        if cand is None:
            continue
        geolocation = decode_geo(cand)
        if geolocation is not None:
            break
        if isinstance(cand, dict) and any(k in cand for k in ("latitude", "lat")):
            saw_geo = True
    if geolocation is None and saw_geo:
        missing.append("geolocation")

    caption = _clean_text(item.get("description", item.get("caption")))

    return MediaEntry(
        album_name=album_name,
        source_reference=source_reference,
        capture_time=capture_time,
        geolocation=geolocation,
        caption=caption,
        comments=_decode_comments(item.get("comments")),
        manifest_path=manifest_path,
        ordinal=ordinal,
        kind=RecordKind.PARTIAL if missing else RecordKind.FULL,
        missing=tuple(missing),
    )


def _album_name(value: Any, manifest_path: Path) -> str:
    return _clean_text(value) or manifest_path.stem.strip() or DEFAULT_ALBUM_NAME


def records_from_document(doc: Any, manifest_path: Path) -> List[Tuple[str, dict]]:
    """
    Flatten one manifest document into (album_name, item) pairs.
    Layouts:
      - album document: {"name": .., "photos": [..], "videos": [..]}
      - flat record:    {"album": .., "uri": .., ...}
      - list of flat records
    """
    if isinstance(doc, dict) and any(isinstance(doc.get(k), list) for k in ITEM_LIST_KEYS):
        album = _album_name(doc.get("name", doc.get("title")), manifest_path)
        out = []
        for key in ITEM_LIST_KEYS:
            items = doc.get(key)
            if not isinstance(items, list):
                continue
            for item in items:
                if isinstance(item, dict):
                    out.append((album, item))
                else:
                    log.debug("%s: ignoring non-object entry in %r", manifest_path, key)
        return out

    if isinstance(doc, dict) and "uri" in doc:
        doc = [doc]

    if isinstance(doc, list):
        out = []
        for rec in doc:
            if not isinstance(rec, dict):
                log.debug("%s: ignoring non-object record", manifest_path)
                continue
            out.append((_album_name(rec.get("album", rec.get("album_name")), manifest_path), rec))
        if doc and not out:
            raise ManifestError(manifest_path, "no media records in list")
        return out

    raise ManifestError(manifest_path, "unrecognised manifest layout")


def load_manifest(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestError(path, f"unreadable JSON ({e})") from e


# ---------- Parser ----------

class ManifestParser:
    """
    Walks the manifest root of one export. Holds no state between entries;
    `failures` describes the most recent pass.
    """

    def __init__(self, export_root: Path, manifest_subdir: str = "photos_and_videos/album") -> None:
        self.export_root = Path(export_root)
        self.manifest_subdir = manifest_subdir or ""
        self.failures: List[ManifestFailure] = []

    @property
    def manifest_root(self) -> Path:
        return self.export_root / self.manifest_subdir if self.manifest_subdir else self.export_root

    def check(self) -> None:
        """Raise ConfigError if the export or manifest root is missing/unreadable."""
        if not self.export_root.is_dir():
            raise ConfigError(f"export root not found or not a directory: {self.export_root}")
        if not self.manifest_root.is_dir():
            raise ConfigError(f"manifest directory not found: {self.manifest_root}")

    def manifest_files(self) -> List[Path]:
        return sorted(
            (p for p in walk_files(self.manifest_root) if p.suffix.lower() == ".json"),
            key=lambda p: p.relative_to(self.manifest_root).as_posix(),
        )

    def iter_entries(self) -> Iterator[MediaEntry]:
        self.check()
        self.failures = []
        ordinal = 0
        for path in self.manifest_files():
            try:
                records = records_from_document(load_manifest(path), path)
            except ManifestError as e:
                log.warning("MANIFEST SKIP %s: %s", path, e.reason)
                self.failures.append(ManifestFailure(path=path, reason=e.reason))
                continue
            log.debug("Manifest %s: %d record(s)", path, len(records))
            for album, item in records:
                entry = decode_item(item, album, manifest_path=path, ordinal=ordinal)
                if entry.kind == RecordKind.PARTIAL:
                    log.debug("PARTIAL #%d in %s: missing %s", ordinal, path.name, ", ".join(entry.missing))
                yield entry
                ordinal += 1

    def __iter__(self) -> Iterator[MediaEntry]:
        return self.iter_entries()
