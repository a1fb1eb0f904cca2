import io
import logging
import struct
from datetime import datetime, timezone

import pytest
from mutagen.mp4 import MP4

from albumizer.core.errors import StructuralIntegrityError
from albumizer.schemas.media import AuthoritativeValues, GeoPoint
from albumizer.services.mp4 import (
    MDTA_CREATION_DATE, MDTA_LOCATION, VideoCodec, iso6709, parse_atom, read_video_metadata,
    text_atom_payload, to_quicktime_seconds, top_level_atoms,
)

JAN_1_2021 = datetime(2021, 1, 1, tzinfo=timezone.utc)
QT_2020 = 3660681600
VALUES = AuthoritativeValues(
    capture_time=JAN_1_2021,
    geolocation=GeoPoint(latitude=-33.8, longitude=151.2),
    caption="Sunset",
)


def _chunk_offset(data: bytes) -> int:
    moov = parse_atom(data, [s for s in top_level_atoms(data) if s.kind == b"moov"][0])
    stco = [a for a in moov.walk() if a.kind == b"stco"][0]
    return struct.unpack_from(">I", stco.payload, 8)[0]


def _mdat_payload(data: bytes) -> bytes:
    span = [s for s in top_level_atoms(data) if s.kind == b"mdat"][0]
    return data[span.start + span.header:span.end]


def _outside_moov(data: bytes):
    return [data[s.start:s.end] for s in top_level_atoms(data) if s.kind != b"moov"]


def _mdta_meta(box, values: dict) -> bytes:
    """QuickTime moov/meta: hdlr(mdta) + keys + ilst, no version word."""
    hdlr = box(b"hdlr", b"\x00" * 8 + b"mdta" + b"\x00" * 12 + b"\x00")
    entries = b"".join(struct.pack(">I4s", 8 + len(k), b"mdta") + k.encode() for k in values)
    keys = box(b"keys", b"\x00" * 4 + struct.pack(">I", len(values)) + entries)
    items = b"".join(
        box(struct.pack(">I", i), box(b"data", struct.pack(">II", 1, 0) + v.encode()))
        for i, v in enumerate(values.values(), start=1)
    )
    return box(b"meta", hdlr + keys + box(b"ilst", items))


def test_quicktime_epoch():
    assert to_quicktime_seconds(datetime(1970, 1, 1, tzinfo=timezone.utc)) == 2082844800
    assert to_quicktime_seconds(datetime(2020, 1, 1, tzinfo=timezone.utc)) == QT_2020


def test_iso6709():
    assert iso6709(GeoPoint(latitude=-33.8, longitude=151.2)) == "-33.8000+151.2000/"
    assert iso6709(GeoPoint(latitude=5, longitude=-7.25)) == "+05.0000-007.2500/"


@pytest.mark.parametrize("faststart", [True, False])
def test_rewrites_times_and_udta(make_mp4, faststart):
    data = make_mp4(faststart=faststart)
    out = VideoCodec().apply_metadata(data, VALUES)
    meta = read_video_metadata(out)
    assert meta["creation_time"] == JAN_1_2021
    assert meta["\xa9day"] == "2021-01-01T00:00:00Z"
    assert meta["\xa9xyz"] == "-33.8000+151.2000/"
    assert meta["\xa9des"] == "Sunset"

    assert meta["itunes"]["\xa9day"] == "2021-01-01T00:00:00Z"
    assert meta["itunes"]["desc"] == "Sunset"

    # chunk offsets still land on the media data
    off = _chunk_offset(out)
    assert out[off:off + 64] == bytes(range(64))
    assert _mdat_payload(out) == _mdat_payload(data)

    # only moov changes: same top-level layout, every other atom byte-identical
    assert [s.kind for s in top_level_atoms(out)] == [s.kind for s in top_level_atoms(data)]
    assert _outside_moov(out) == _outside_moov(data)


def test_every_timed_atom_is_patched(make_mp4):
    out = VideoCodec().apply_metadata(make_mp4(), AuthoritativeValues(capture_time=JAN_1_2021))
    moov = parse_atom(out, [s for s in top_level_atoms(out) if s.kind == b"moov"][0])
    secs = to_quicktime_seconds(JAN_1_2021)
    timed = [a for a in moov.walk() if a.kind in (b"mvhd", b"tkhd", b"mdhd")]
    assert len(timed) == 3
    for atom in timed:
        assert struct.unpack_from(">II", atom.payload, 4) == (secs, secs)


def test_idempotent(make_mp4):
    codec = VideoCodec()
    once = codec.apply_metadata(make_mp4(), VALUES)
    assert codec.apply_metadata(once, VALUES) == once


def test_existing_tags_are_replaced_not_duplicated(make_mp4, mp4_box):
    old = mp4_box(b"\xa9des", struct.pack(">HH", 3, 0x15C7) + b"old") * 2
    data = make_mp4(udta=mp4_box(b"udta", old))
    out = VideoCodec().apply_metadata(data, AuthoritativeValues(caption="new"))
    assert out.count(b"\xa9des") == 1
    assert read_video_metadata(out)["\xa9des"] == "new"


def test_only_caption_leaves_times_alone(make_mp4):
    out = VideoCodec().apply_metadata(make_mp4(), AuthoritativeValues(caption="hi"))
    assert read_video_metadata(out)["creation_time"] == datetime(2020, 1, 1, tzinfo=timezone.utc)


def test_refuses_without_moov(mp4_box):
    data = mp4_box(b"ftyp", b"isom\x00\x00\x02\x00") + mp4_box(b"mdat", b"\x00" * 16)
    with pytest.raises(StructuralIntegrityError):
        VideoCodec().apply_metadata(data, VALUES)


def test_refuses_truncated_atom(make_mp4):
    data = make_mp4()
    with pytest.raises(StructuralIntegrityError):
        VideoCodec().apply_metadata(data[:-10], VALUES)


def test_refuses_growing_a_fragmented_file(make_mp4, mp4_box):
    data = make_mp4(extra_top=mp4_box(b"moof", b"\x00" * 8))
    with pytest.raises(StructuralIntegrityError):
        VideoCodec().apply_metadata(data, VALUES)


def test_time_before_1904_is_refused(make_mp4):
    values = AuthoritativeValues(capture_time=datetime(1900, 1, 1, tzinfo=timezone.utc))
    with pytest.raises(StructuralIntegrityError):
        VideoCodec().apply_metadata(make_mp4(), values)


def test_quicktime_metadata_is_overwritten(make_mp4, mp4_box):
    meta = _mdta_meta(mp4_box, {
        MDTA_CREATION_DATE: "2015-06-01T10:00:00+0000",
        MDTA_LOCATION: "+48.8584+002.2945+035.000/",
        "com.apple.quicktime.make": "Apple",
    })
    data = make_mp4(meta=meta)
    out = VideoCodec().apply_metadata(data, VALUES)

    assert b"2015-06-01T10:00:00" not in out
    mdta = read_video_metadata(out)["mdta"]
    assert mdta[MDTA_CREATION_DATE] == "2021-01-01T00:00:00+0000"
    assert mdta[MDTA_LOCATION] == "-33.8000+151.2000/"
    assert mdta["com.apple.quicktime.make"] == "Apple"
    off = _chunk_offset(out)
    assert out[off:off + 64] == bytes(range(64))
    assert VideoCodec().apply_metadata(out, VALUES) == out


def test_stale_itunes_date_is_replaced(make_mp4):
    buf = io.BytesIO(make_mp4())
    tagged = MP4(buf)
    tagged.add_tags()
    tagged.tags["\xa9day"] = ["2015-06-01"]
    tagged.tags["\xa9nam"] = ["Beach"]
    tagged.save(buf)

    out = VideoCodec().apply_metadata(buf.getvalue(), VALUES)
    itunes = read_video_metadata(out)["itunes"]
    assert b"2015-06-01" not in out
    assert itunes["\xa9day"] == "2021-01-01T00:00:00Z"
    assert itunes["\xa9nam"] == "Beach"


def test_long_caption_is_truncated_with_a_warning(monkeypatch, caplog):
    monkeypatch.setattr(logging.getLogger("albumizer"), "propagate", True)
    with caplog.at_level(logging.WARNING):
        payload = text_atom_payload("é" * 40000)
    assert struct.unpack_from(">H", payload, 0)[0] == 65534
    assert "truncating" in caplog.text
