import io
import json
import struct
from pathlib import Path

import pytest
from PIL import Image

QT_2020 = 3660681600  # 2020-01-01T00:00:00Z in seconds since 1904


def _box(kind: bytes, payload: bytes) -> bytes:
    return struct.pack(">I4s", 8 + len(payload), kind) + payload


def _full(version: int = 0, flags: int = 0) -> bytes:
    return bytes([version]) + flags.to_bytes(3, "big")


def _matrix() -> bytes:
    return struct.pack(">9I", 0x00010000, 0, 0, 0, 0x00010000, 0, 0, 0, 0x40000000)


def _mvhd(t: int) -> bytes:
    return _box(b"mvhd", _full() + struct.pack(">IIII", t, t, 1000, 2000)
                + struct.pack(">IH", 0x00010000, 0x0100) + b"\x00" * 10 + _matrix()
                + b"\x00" * 24 + struct.pack(">I", 2))


def _tkhd(t: int) -> bytes:
    return _box(b"tkhd", _full(0, 3) + struct.pack(">IIIII", t, t, 1, 0, 2000)
                + b"\x00" * 8 + struct.pack(">HHHH", 0, 0, 0, 0) + _matrix()
                + struct.pack(">II", 0, 0))


def _mdhd(t: int) -> bytes:
    return _box(b"mdhd", _full() + struct.pack(">IIIIHH", t, t, 1000, 2000, 0x55C4, 0))


def _hdlr(handler: bytes) -> bytes:
    return _box(b"hdlr", _full() + b"\x00" * 4 + handler + b"\x00" * 12 + b"Handler\x00")


def _moov(chunk_offset: int, udta: bytes = b"", meta: bytes = b"") -> bytes:
    stco = _box(b"stco", _full() + struct.pack(">II", 1, chunk_offset))
    stsd = _box(b"stsd", _full() + struct.pack(">I", 0))
    stbl = _box(b"stbl", stsd + stco)
    minf = _box(b"minf", stbl)
    mdia = _box(b"mdia", _mdhd(QT_2020) + _hdlr(b"vide") + minf)
    trak = _box(b"trak", _tkhd(QT_2020) + mdia)
    return _box(b"moov", _mvhd(QT_2020) + trak + udta + meta)


def build_mp4(faststart: bool = True, udta: bytes = b"", extra_top: bytes = b"", meta: bytes = b"") -> bytes:
    """ftyp + moov + mdat (faststart) or ftyp + mdat + moov; stco points at the mdat payload."""
    ftyp = _box(b"ftyp", b"isom" + struct.pack(">I", 512) + b"isomiso2mp41")
    mdat_payload = bytes(range(64))
    if faststart:
        moov_len = len(_moov(0, udta, meta))
        offset = len(ftyp) + moov_len + 8
        return ftyp + _moov(offset, udta, meta) + _box(b"mdat", mdat_payload) + extra_top
    offset = len(ftyp) + 8
    return ftyp + _box(b"mdat", mdat_payload) + _moov(offset, udta, meta) + extra_top


def build_jpeg(color=(200, 30, 30), size=(16, 16), exif: bytes = None) -> bytes:
    buf = io.BytesIO()
    kwargs = {"exif": exif} if exif else {}
    Image.new("RGB", size, color).save(buf, "JPEG", quality=90, **kwargs)
    return buf.getvalue()


@pytest.fixture
def make_jpeg():
    return build_jpeg


@pytest.fixture
def make_mp4():
    return build_mp4


@pytest.fixture
def mp4_box():
    return _box


class ExportTree:
    """A throwaway export: media files + album manifests under photos_and_videos/album."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.manifests = root / "photos_and_videos" / "album"
        self.manifests.mkdir(parents=True, exist_ok=True)

    def add_file(self, rel: str, data: bytes) -> Path:
        p = self.root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
        return p

    def add_manifest(self, name: str, doc) -> Path:
        p = self.manifests / name
        p.write_text(json.dumps(doc), encoding="utf-8")
        return p

    def add_raw_manifest(self, name: str, text: str) -> Path:
        p = self.manifests / name
        p.write_text(text, encoding="utf-8")
        return p


@pytest.fixture
def export(tmp_path):
    return ExportTree(tmp_path / "export")
