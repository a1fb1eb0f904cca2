import logging
from datetime import datetime, timezone

import pytest

from albumizer.core.errors import ConfigError
from albumizer.schemas.media import RecordKind
from albumizer.services.manifest import (
    ManifestParser, decode_geo, decode_item, decode_timestamp, parse_timestamp_text,
)

JAN_1_2021 = datetime(2021, 1, 1, tzinfo=timezone.utc)


def test_timestamp_object_prefers_the_number():
    value = {"timestamp": 1609459200, "timestamp_text": "Jan 1, 2021"}
    assert decode_timestamp(value) == JAN_1_2021


def test_timestamp_number_wins_when_text_disagrees():
    value = {"timestamp": 1609459200, "timestamp_text": "Mar 3, 1999"}
    assert decode_timestamp(value) == JAN_1_2021


def test_timestamp_text_is_the_fallback():
    assert decode_timestamp({"timestamp_text": "Jan 1, 2021"}) == JAN_1_2021
    assert decode_timestamp({"timestamp": None, "timestamp_text": "2021-01-01T00:00:00Z"}) == JAN_1_2021


def test_timestamp_plain_forms():
    assert decode_timestamp(1609459200) == JAN_1_2021
    assert decode_timestamp("1609459200") == JAN_1_2021
    assert decode_timestamp(0) is None
    assert decode_timestamp(True) is None
    assert decode_timestamp("not a date") is None
    assert decode_timestamp(None) is None


def test_parse_timestamp_text_with_time():
    assert parse_timestamp_text("Jan 1, 2021, 9:30 PM") == datetime(2021, 1, 1, 21, 30, tzinfo=timezone.utc)


def test_decode_geo():
    g = decode_geo({"latitude": -33.8, "longitude": 151.2})
    assert (g.latitude, g.longitude) == (-33.8, 151.2)
    assert decode_geo({"lat": "10.5", "lng": "-20"}).longitude == -20.0
    assert decode_geo({"latitude": 0, "longitude": 0}) is None
    assert decode_geo({"latitude": 123.0, "longitude": 0.5}) is None
    assert decode_geo("somewhere") is None


def test_decode_full_item_from_album_layout():
    item = {
        "uri": "photos_and_videos/Trip_abc/1.jpg",
        "creation_timestamp": 1700000000,
        "description": "CafÃ© by the sea",
        "media_metadata": {"photo_metadata": {"exif_data": [
            {"taken_timestamp": 1609459200, "latitude": -33.8, "longitude": 151.2},
        ]}},
        "comments": [
            {"timestamp": 1609462800, "comment": "Nice!", "author": "JÃ¶rg"},
            {"timestamp": 1609462800, "author": "nobody"},
        ],
    }
    e = decode_item(item, "Trip", ordinal=3)
    assert e.kind == RecordKind.FULL
    assert e.capture_time == JAN_1_2021  # taken_timestamp beats creation_timestamp
    assert e.geolocation.latitude == -33.8
    assert e.caption == "Café by the sea"
    assert [(c.author, c.text) for c in e.comments] == [("Jörg", "Nice!")]
    assert e.ordinal == 3


def test_decode_partial_item_names_what_is_missing():
    e = decode_item({"description": "", "location": {"latitude": "x", "longitude": 1}}, "Trip")
    assert e.kind == RecordKind.PARTIAL
    assert set(e.missing) == {"uri", "capture_time", "geolocation"}
    assert e.source_reference is None
    assert e.caption is None
    assert e.geolocation is None


def test_parser_reads_all_layouts_in_order(export):
    export.add_manifest("0.json", {
        "name": "Summer cafÃ©",
        "photos": [{"uri": "a/1.jpg", "creation_timestamp": 1609459200}],
        "videos": [{"uri": "a/2.mp4", "creation_timestamp": 1609459201}],
    })
    export.add_manifest("1.json", {
        "album": "Trip", "uri": "photos/IMG_01.jpg",
        "creation_timestamp": {"timestamp": 1609459200, "timestamp_text": "Jan 1, 2021"},
    })
    export.add_manifest("2.json", [
        {"uri": "b/3.jpg"},
        {"album_name": "Other", "uri": "b/4.jpg"},
        "junk",
    ])
    entries = list(ManifestParser(export.root).iter_entries())
    assert [(e.album_name, e.source_reference) for e in entries] == [
        ("Summer café", "a/1.jpg"),
        ("Summer café", "a/2.mp4"),
        ("Trip", "photos/IMG_01.jpg"),
        ("2", "b/3.jpg"),          # no album field: the manifest's name
        ("Other", "b/4.jpg"),
    ]
    assert [e.ordinal for e in entries] == [0, 1, 2, 3, 4]
    assert entries[2].capture_time == JAN_1_2021


def test_parser_skips_broken_manifests(export):
    export.add_raw_manifest("a_broken.json", '{"name": "Oops", "photos": [')
    export.add_manifest("b_unknown.json", {"profile": {"name": "me"}})
    export.add_manifest("c_good.json", {"name": "Good", "photos": [{"uri": "x.jpg"}]})
    parser = ManifestParser(export.root)
    entries = list(parser.iter_entries())
    assert [e.album_name for e in entries] == ["Good"]
    assert sorted(f.path.name for f in parser.failures) == ["a_broken.json", "b_unknown.json"]


def test_parser_logs_partial_records(export, monkeypatch, caplog):
    monkeypatch.setattr(logging.getLogger("albumizer"), "propagate", True)
    export.add_manifest("0.json", {"name": "A", "photos": [{"uri": "1.jpg"}, {"description": "no file"}]})
    with caplog.at_level(logging.DEBUG, logger="albumizer"):
        entries = list(ManifestParser(export.root).iter_entries())
    assert [e.kind for e in entries] == [RecordKind.PARTIAL, RecordKind.PARTIAL]
    partial = [r.getMessage() for r in caplog.records if r.getMessage().startswith("PARTIAL")]
    assert len(partial) == 2
    assert "missing uri, capture_time" in partial[1]


def test_parser_is_restartable(export):
    export.add_manifest("0.json", {"name": "A", "photos": [{"uri": "1.jpg"}, {"uri": "2.jpg"}]})
    parser = ManifestParser(export.root)
    assert list(parser.iter_entries()) == list(parser.iter_entries())


def test_missing_roots_are_fatal(tmp_path):
    with pytest.raises(ConfigError):
        list(ManifestParser(tmp_path / "nope").iter_entries())
    (tmp_path / "export").mkdir()
    with pytest.raises(ConfigError):
        ManifestParser(tmp_path / "export").check()
