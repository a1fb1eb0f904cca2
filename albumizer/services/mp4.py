# albumizer/services/mp4.py
# Video codec: rewrite creation time, location and caption inside an
# ISO-BMFF / QuickTime file (mp4, mov, m4v, 3gp).
# - mvhd, tkhd and mdhd creation/modification times are patched in place (same size)
# - QuickTime metadata already in moov/meta (mdta keys + ilst) is overwritten
# - moov/udta text atoms ©day (ISO 8601), ©xyz (ISO 6709), ©des (caption)
# - iTunes tags in moov/udta/meta/ilst go through mutagen
# - Every top-level atom except moov must come out byte-identical;
#   anything we can't fix up safely raises StructuralIntegrityError

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from mutagen import MutagenError
from mutagen.mp4 import MP4

from albumizer.core.errors import StructuralIntegrityError
from albumizer.schemas.media import AuthoritativeValues, GeoPoint

log = logging.getLogger(__name__)

QUICKTIME_EPOCH_OFFSET = 2082844800  # 1904-01-01 -> 1970-01-01, in seconds
LANG_ENG = 0x15C7  # packed ISO-639-2 "eng"
MAX_DEPTH = 32
MAX_TEXT_BYTES = 0xFFFF

# atoms whose payload is nothing but child atoms (meta is handled separately)
CONTAINER_KINDS = {b"moov", b"trak", b"mdia", b"minf", b"stbl", b"edts", b"dinf", b"mvex", b"udta", b"ilst"}
# atoms holding creation/modification times at the same offsets
TIMED_KINDS = {b"mvhd", b"tkhd", b"mdhd"}
# top-level atoms that address file offsets we don't rewrite
FRAGMENT_KINDS = {b"moof", b"sidx", b"mfra", b"ssix"}

TAG_DAY = b"\xa9day"
TAG_XYZ = b"\xa9xyz"
TAG_DES = b"\xa9des"

# QuickTime metadata keys (moov/meta with an 'mdta' handler)
MDTA_CREATION_DATE = "com.apple.quicktime.creationdate"
MDTA_LOCATION = "com.apple.quicktime.location.ISO6709"
MDTA_DESCRIPTION = "com.apple.quicktime.description"
DATA_TYPE_UTF8 = 1

# iTunes-style tags, as mutagen names them
ITUNES_DAY = "\xa9day"
ITUNES_DESCRIPTION = "desc"


@dataclass
class Span:
    kind: bytes
    start: int
    header: int
    end: int
    large: bool = False


@dataclass
class Atom:
    kind: bytes
    payload: bytes = b""
    children: Optional[List["Atom"]] = None
    trailer: bytes = b""
    large: bool = False
    prefix: bytes = b""  # version/flags word of a full-box meta

    def body(self) -> bytes:
        if self.children is None:
            return self.payload
        return self.prefix + b"".join(c.serialize() for c in self.children) + self.trailer

    def serialize(self) -> bytes:
        body = self.body()
        if self.large:
            return struct.pack(">I4sQ", 1, self.kind, len(body) + 16) + body
        size = len(body) + 8
        if size > 0xFFFFFFFF:
            raise StructuralIntegrityError(f"atom {self.kind!r} outgrew a 32-bit size")
        return struct.pack(">I4s", size, self.kind) + body

    def find(self, kind: bytes) -> List["Atom"]:
        return [c for c in (self.children or []) if c.kind == kind]

    def walk(self):
        yield self
        for c in self.children or []:
            yield from c.walk()


# ---------- Parsing ----------

def scan_atoms(data: bytes, start: int = 0, end: Optional[int] = None) -> Tuple[List[Span], bytes]:
    """
    Split data[start:end] into atom spans. Returns (spans, trailer) where the
    trailer is a run of fewer than 8 bytes that can't hold an atom header
    (QuickTime pads udta with a zero word).
    """
    end = len(data) if end is None else end
    spans: List[Span] = []
    pos = start
    while pos < end:
        if end - pos < 8:
            return spans, bytes(data[pos:end])
        size, kind = struct.unpack_from(">I4s", data, pos)
        header, large = 8, False
        if size == 1:
            if end - pos < 16:
                raise StructuralIntegrityError(f"truncated 64-bit header for {kind!r} at {pos}")
            size = struct.unpack_from(">Q", data, pos + 8)[0]
            header, large = 16, True
        elif size == 0:
            size = end - pos  # runs to the end of the parent
        if size < header or pos + size > end:
            raise StructuralIntegrityError(f"atom {kind!r} at {pos} overruns its parent")
        spans.append(Span(kind, pos, header, pos + size, large))
        pos += size
    return spans, b""


def _meta_prefix_size(data: bytes, start: int) -> Optional[int]:
    """QuickTime meta starts straight with hdlr; ISO/iTunes meta has a version/flags word first."""
    if data[start + 4:start + 8] == b"hdlr":
        return 0
    if data[start + 8:start + 12] == b"hdlr":
        return 4
    return None


def parse_atom(data: bytes, span: Span, depth: int = 0) -> Atom:
    if depth > MAX_DEPTH:
        raise StructuralIntegrityError("atoms nested too deeply")
    body_start = span.start + span.header
    prefix = b""
    if span.kind == b"meta":
        skip = _meta_prefix_size(data, body_start)
        if skip is None:
            return Atom(span.kind, payload=bytes(data[body_start:span.end]), large=span.large)
        prefix = bytes(data[body_start:body_start + skip])
        body_start += skip
    elif span.kind not in CONTAINER_KINDS:
        return Atom(span.kind, payload=bytes(data[body_start:span.end]), large=span.large)
    spans, trailer = scan_atoms(data, body_start, span.end)
    children = [parse_atom(data, s, depth + 1) for s in spans]
    return Atom(span.kind, children=children, trailer=trailer, large=span.large, prefix=prefix)


def top_level_atoms(data: bytes) -> List[Span]:
    spans, _ = scan_atoms(data)
    return spans


def _moov_span(data: bytes) -> Span:
    moov_spans = [s for s in top_level_atoms(data) if s.kind == b"moov"]
    if not moov_spans:
        raise StructuralIntegrityError("no moov atom")
    if len(moov_spans) > 1:
        raise StructuralIntegrityError("more than one moov atom")
    return moov_spans[0]


def _outside_moov(data: bytes) -> List[Tuple[bytes, Optional[bytes]]]:
    return [(s.kind, None if s.kind == b"moov" else data[s.start:s.end]) for s in top_level_atoms(data)]


# ---------- Field encoders ----------

def to_quicktime_seconds(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp()) + QUICKTIME_EPOCH_OFFSET


def from_quicktime_seconds(value: int) -> datetime:
    return datetime.fromtimestamp(value - QUICKTIME_EPOCH_OFFSET, tz=timezone.utc)


def iso6709(point: GeoPoint) -> str:
    """-33.8, 151.2 -> '-33.8000+151.2000/'"""
    return f"{point.latitude:+08.4f}{point.longitude:+09.4f}/"


def text_atom_payload(text: str) -> bytes:
    raw = text.encode("utf-8")
    if len(raw) > MAX_TEXT_BYTES:
        log.warning("Caption is %d bytes; QuickTime text atoms hold %d, truncating", len(raw), MAX_TEXT_BYTES)
        raw = raw[:MAX_TEXT_BYTES].decode("utf-8", "ignore").encode("utf-8")
    return struct.pack(">HH", len(raw), LANG_ENG) + raw


def read_text_atom(payload: bytes) -> str:
    n = struct.unpack_from(">H", payload, 0)[0]
    return payload[4:4 + n].decode("utf-8", "replace")


def patch_times(atom: Atom, qt_seconds: int) -> None:
    """Overwrite creation + modification time of an mvhd/tkhd/mdhd in place (same size)."""
    p = bytearray(atom.payload)
    if len(p) < 4:
        raise StructuralIntegrityError(f"{atom.kind!r} too short")
    version = p[0]
    if version == 0:
        if not 0 <= qt_seconds <= 0xFFFFFFFF:
            raise StructuralIntegrityError(f"time does not fit a version-0 {atom.kind!r}")
        if len(p) < 12:
            raise StructuralIntegrityError(f"{atom.kind!r} too short")
        struct.pack_into(">II", p, 4, qt_seconds, qt_seconds)
    elif version == 1:
        if qt_seconds < 0:
            raise StructuralIntegrityError(f"time before 1904 in {atom.kind!r}")
        if len(p) < 20:
            raise StructuralIntegrityError(f"{atom.kind!r} too short")
        struct.pack_into(">QQ", p, 4, qt_seconds, qt_seconds)
    else:
        raise StructuralIntegrityError(f"unknown {atom.kind!r} version {version}")
    atom.payload = bytes(p)


def shift_chunk_offsets(moov: Atom, threshold: int, delta: int) -> int:
    """Add `delta` to every stco/co64 offset >= threshold. Returns how many moved."""
    moved = 0
    for atom in moov.walk():
        if atom.kind not in (b"stco", b"co64"):
            continue
        width, fmt, limit = (4, ">I", 0xFFFFFFFF) if atom.kind == b"stco" else (8, ">Q", 0xFFFFFFFFFFFFFFFF)
        p = bytearray(atom.payload)
        if len(p) < 8:
            raise StructuralIntegrityError(f"{atom.kind!r} too short")
        count = struct.unpack_from(">I", p, 4)[0]
        if 8 + count * width > len(p):
            raise StructuralIntegrityError(f"{atom.kind!r} entry table overruns the atom")
        for i in range(count):
            off = 8 + i * width
            value = struct.unpack_from(fmt, p, off)[0]
            if value < threshold:
                continue
            value += delta
            if not 0 <= value <= limit:
                raise StructuralIntegrityError(f"shifted chunk offset does not fit {atom.kind!r}")
            struct.pack_into(fmt, p, off, value)
            moved += 1
        atom.payload = bytes(p)
    return moved


def upsert_udta(moov: Atom, texts: List[Tuple[bytes, str]]) -> None:
    """
    Set QuickTime text atoms in moov/udta, creating udta if needed.
    Existing atoms are replaced where they stand; new ones go at the end.
    Repeats of the same tag are dropped so nothing accumulates.
    """
    if not texts:
        return
    kinds = {kind for kind, _ in texts}
    udtas = moov.find(b"udta")
    holding = [u for u in udtas if any(c.kind in kinds for c in u.children or [])]
    if holding:
        udta = holding[0]
    elif udtas:
        udta = udtas[0]
    else:
        udta = Atom(b"udta", children=[])
        # before moov/meta, where QuickTime writers put it
        metas = [i for i, c in enumerate(moov.children) if c.kind == b"meta"]
        moov.children.insert(metas[0] if metas else len(moov.children), udta)

    for kind, text in texts:
        payload = text_atom_payload(text)
        existing = [c for c in udta.children if c.kind == kind]
        if existing:
            existing[0].payload = payload
            udta.children = [c for c in udta.children if c.kind != kind or c is existing[0]]
        else:
            udta.children.append(Atom(kind, payload=payload))


# ---------- QuickTime metadata (moov/meta, 'mdta' handler) ----------

def handler_type(meta: Atom) -> Optional[bytes]:
    for hdlr in meta.find(b"hdlr"):
        if len(hdlr.payload) >= 12:
            return hdlr.payload[8:12]
    return None


def read_mdta_keys(payload: bytes) -> List[str]:
    """keys atom: version/flags, entry count, then (size, namespace, name) per key."""
    if len(payload) < 8:
        raise StructuralIntegrityError("keys atom too short")
    count = struct.unpack_from(">I", payload, 4)[0]
    keys: List[str] = []
    pos = 8
    for _ in range(count):
        if pos + 8 > len(payload):
            raise StructuralIntegrityError("keys table overruns the atom")
        size = struct.unpack_from(">I", payload, pos)[0]
        if size < 8 or pos + size > len(payload):
            raise StructuralIntegrityError("keys entry overruns the atom")
        keys.append(payload[pos + 8:pos + size].decode("utf-8", "replace"))
        pos += size
    return keys


def mdta_items(meta: Atom) -> List[Tuple[str, Atom]]:
    """(key name, ilst item) pairs of one mdta meta; items refer to keys by 1-based index."""
    keys_atoms, ilsts = meta.find(b"keys"), meta.find(b"ilst")
    if not keys_atoms or not ilsts:
        return []
    keys = read_mdta_keys(keys_atoms[0].payload)
    out = []
    for item in ilsts[0].children or []:
        index = int.from_bytes(item.kind, "big")
        if 1 <= index <= len(keys):
            out.append((keys[index - 1], item))
    return out


def read_data_atom(item: Atom) -> Optional[str]:
    spans, _ = scan_atoms(item.payload)
    for s in spans:
        if s.kind == b"data":
            return item.payload[s.start + s.header + 8:s.end].decode("utf-8", "replace")
    return None


def set_data_atom(item: Atom, text: str) -> None:
    """Give an ilst item a single UTF-8 value, keeping the locale of its first value."""
    spans, _ = scan_atoms(item.payload)
    locale = 0
    for s in spans:
        if s.kind == b"data" and s.end - s.start - s.header >= 8:
            locale = struct.unpack_from(">I", item.payload, s.start + s.header + 4)[0]
            break
    others = [item.payload[s.start:s.end] for s in spans if s.kind != b"data"]
    value = Atom(b"data", payload=struct.pack(">II", DATA_TYPE_UTF8, locale) + text.encode("utf-8"))
    item.payload = value.serialize() + b"".join(others)


def update_mdta(moov: Atom, updates: Dict[str, str]) -> int:
    """Overwrite existing mdta values. Keys the file doesn't have are not added."""
    changed = 0
    for meta in moov.find(b"meta"):
        if meta.children is None or handler_type(meta) != b"mdta":
            continue
        for key, item in mdta_items(meta):
            if key in updates:
                set_data_atom(item, updates[key])
                changed += 1
    return changed


# ---------- iTunes tags (moov/udta/meta/ilst) ----------

def _no_padding(info) -> int:
    return 0


def write_itunes_tags(data: bytes, tags: Dict[str, str]) -> bytes:
    """Set iTunes tags with mutagen, which also moves stco/co64 offsets for us."""
    if not tags:
        return data
    buf = io.BytesIO(data)
    try:
        mp4 = MP4(buf)
        if mp4.tags is None:
            mp4.add_tags()
        for key, value in tags.items():
            mp4.tags[key] = [value]
        mp4.save(buf, padding=_no_padding)
    except (MutagenError, ValueError) as e:
        raise StructuralIntegrityError(f"unable to write iTunes tags: {e}") from e
    return buf.getvalue()


def read_itunes_tags(data: bytes) -> Dict[str, str]:
    try:
        tags = MP4(io.BytesIO(data)).tags
    except MutagenError:
        return {}
    return {key: str(value[0]) for key, value in (tags or {}).items() if value}


# ---------- Codec ----------

class VideoCodec:
    """Metadata rewriter for ISO-BMFF / QuickTime containers."""

    def apply_metadata(self, data: bytes, values: AuthoritativeValues) -> bytes:
        top = top_level_atoms(data)
        span = _moov_span(data)
        moov = parse_atom(data, span)

        texts: List[Tuple[bytes, str]] = []
        mdta: Dict[str, str] = {}
        itunes: Dict[str, str] = {}
        if values.capture_time is not None:
            secs = to_quicktime_seconds(values.capture_time)
            for atom in moov.walk():
                if atom.kind in TIMED_KINDS:
                    patch_times(atom, secs)
            utc = values.capture_time.astimezone(timezone.utc)
            stamp = utc.strftime("%Y-%m-%dT%H:%M:%SZ")
            texts.append((TAG_DAY, stamp))
            mdta[MDTA_CREATION_DATE] = utc.strftime("%Y-%m-%dT%H:%M:%S%z")
            itunes[ITUNES_DAY] = stamp
        if values.geolocation is not None:
            where = iso6709(values.geolocation)
            texts.append((TAG_XYZ, where))
            mdta[MDTA_LOCATION] = where
        if values.caption:
            texts.append((TAG_DES, values.caption))
            mdta[MDTA_DESCRIPTION] = values.caption
            itunes[ITUNES_DESCRIPTION] = values.caption

        changed = update_mdta(moov, mdta)
        if changed:
            log.debug("Overwrote %d QuickTime metadata value(s)", changed)
        upsert_udta(moov, texts)

        new_moov = moov.serialize()
        delta = len(new_moov) - (span.end - span.start)
        if delta:
            fragments = sorted({s.kind for s in top if s.kind in FRAGMENT_KINDS})
            if fragments:
                raise StructuralIntegrityError(f"moov size change in a fragmented file ({fragments})")
            moved = shift_chunk_offsets(moov, span.end, delta)
            if moved:
                log.debug("moov grew by %d bytes; shifted %d chunk offset(s)", delta, moved)
                new_moov = moov.serialize()

        out = write_itunes_tags(data[:span.start] + new_moov + data[span.end:], itunes)
        if _outside_moov(out) != _outside_moov(data):
            raise StructuralIntegrityError("tag write changed atoms outside moov")
        parse_atom(out, _moov_span(out))
        return out


def read_video_metadata(data: bytes) -> Dict[str, object]:
    """Creation time, udta texts, mdta values and iTunes tags (for checks and tests)."""
    moov_spans = [s for s in top_level_atoms(data) if s.kind == b"moov"]
    if not moov_spans:
        return {}
    moov = parse_atom(data, moov_spans[0])
    out: Dict[str, object] = {}
    for mvhd in moov.find(b"mvhd"):
        version = mvhd.payload[0]
        secs = struct.unpack_from(">Q" if version == 1 else ">I", mvhd.payload, 4)[0]
        out["creation_time"] = from_quicktime_seconds(secs)
    for udta in moov.find(b"udta"):
        for child in udta.children or []:
            if child.kind in (TAG_DAY, TAG_XYZ, TAG_DES):
                out[child.kind.decode("latin-1")] = read_text_atom(child.payload)
    mdta: Dict[str, Optional[str]] = {}
    for meta in moov.find(b"meta"):
        if meta.children is not None and handler_type(meta) == b"mdta":
            for key, item in mdta_items(meta):
                mdta[key] = read_data_atom(item)
    out["mdta"] = mdta
    out["itunes"] = read_itunes_tags(data)
    return out
