# albumizer/services/locator.py
# Media locator: finds the file a manifest entry refers to.
# Strategies, first hit wins:
#   1) exact relative path under the export root
#   2) normalised path (separators, "./", case-insensitive)
#   3) filename only, via an index of the whole export; ties broken by album
#      name vs. parent folder names, then declared path, then path order

from __future__ import annotations

import difflib
import logging
import threading
from collections import defaultdict
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

from albumizer.schemas.media import ContainerKind, MediaEntry, ResolvedMedia
from albumizer.utils.fs import read_head, walk_files

log = logging.getLogger(__name__)

MANIFEST_EXT = ".json"

# four-character codes that can open an ISO-BMFF / QuickTime file
_VIDEO_BOXES = {b"ftyp", b"moov", b"mdat", b"wide", b"free", b"skip", b"pnot"}


def sniff_container(head: bytes) -> ContainerKind:
    """Container kind from the file signature only."""
    if head[:3] == b"\xff\xd8\xff":
        return ContainerKind.IMAGE
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return ContainerKind.IMAGE
    if len(head) >= 8 and head[4:8] in _VIDEO_BOXES:
        return ContainerKind.VIDEO
    return ContainerKind.UNKNOWN


def normalize_reference(ref: str) -> str:
    """'.\\Photos//a\\B.JPG' -> 'photos/a/b.jpg'"""
    parts = [p for p in ref.replace("\\", "/").split("/") if p not in ("", ".")]
    return "/".join(parts).lower()


def _norm_name(s: str) -> str:
    return " ".join(s.lower().replace("_", " ").replace("-", " ").split())


def album_affinity(album: str, rel_path: PurePosixPath) -> float:
    """How much any parent folder of `rel_path` looks like the album name (0..1)."""
    target = _norm_name(album)
    best = 0.0
    for folder in rel_path.parent.parts:
        ratio = difflib.SequenceMatcher(None, target, _norm_name(folder)).ratio()
        best = max(best, ratio)
    return best


def _shared_parent_suffix(a: PurePosixPath, b: PurePosixPath) -> int:
    n = 0
    for x, y in zip(reversed(a.parent.parts), reversed(b.parent.parts)):
        if x.lower() != y.lower():
            break
        n += 1
    return n


class MediaLocator:
    """
    Resolves entries against one export root. The filename index is built
    once, on first use, and is read-only afterwards (safe to share with workers).
    """

    def __init__(self, export_root: Path, exclude: Optional[Path] = None,
                 image_ext: Optional[set] = None, video_ext: Optional[set] = None) -> None:
        self.export_root = Path(export_root)
        self.exclude = exclude
        self.image_ext = image_ext or set()
        self.video_ext = video_ext or set()
        self._lock = threading.Lock()
        self._by_path: Optional[Dict[str, List[PurePosixPath]]] = None
        self._by_name: Optional[Dict[str, List[PurePosixPath]]] = None

    # ---------- index ----------

    def _build_index(self) -> None:
        by_path: Dict[str, List[PurePosixPath]] = defaultdict(list)
        by_name: Dict[str, List[PurePosixPath]] = defaultdict(list)
        count = 0
        for p in walk_files(self.export_root, exclude=self.exclude):
            if p.suffix.lower() == MANIFEST_EXT:
                continue
            rel = PurePosixPath(p.relative_to(self.export_root).as_posix())
            by_path[rel.as_posix().lower()].append(rel)
            by_name[rel.name.lower()].append(rel)
            count += 1
        self._by_path = dict(by_path)
        self._by_name = dict(by_name)
        log.debug("Indexed %d file(s) under %s", count, self.export_root)

    def ensure_index(self) -> None:
        if self._by_name is not None:
            return
        with self._lock:
            if self._by_name is None:
                self._build_index()

    def reset(self) -> None:
        with self._lock:
            self._by_path = None
            self._by_name = None

    # ---------- strategies ----------

    def _exact(self, ref: str) -> Optional[PurePosixPath]:
        rel = PurePosixPath(ref.lstrip("/"))
        if ".." in rel.parts:
            return None
        candidate = self.export_root / rel
        if candidate.is_file():
            return PurePosixPath(candidate.relative_to(self.export_root).as_posix())
        return None

    def _normalized(self, ref: str) -> Optional[PurePosixPath]:
        hits = self._by_path.get(normalize_reference(ref))
        if not hits:
            return None
        return sorted(hits, key=lambda r: r.as_posix())[0]

    def _by_filename(self, ref: str, album: str) -> Optional[PurePosixPath]:
        declared = PurePosixPath(normalize_reference(ref))
        hits = self._by_name.get(declared.name)
        if not hits:
            return None
        if len(hits) == 1:
            return hits[0]
        ranked = sorted(
            hits,
            key=lambda r: (-album_affinity(album, r), -_shared_parent_suffix(r, declared), r.as_posix()),
        )
        log.debug("%d candidates for %s in album %r; picked %s", len(hits), ref, album, ranked[0])
        return ranked[0]

    # ---------- public ----------

    def resolve(self, entry: MediaEntry) -> Optional[ResolvedMedia]:
        """ResolvedMedia for `entry`, or None when no file matches."""
        ref = entry.source_reference
        if not ref:
            return None
        self.ensure_index()

        rel, how = self._exact(ref), "exact"
        if rel is None:
            rel, how = self._normalized(ref), "normalized"
        if rel is None:
            rel, how = self._by_filename(ref, entry.album_name), "filename"
        if rel is None:
            return None

        path = (self.export_root / rel).resolve()
        try:
            kind = sniff_container(read_head(path))
        except OSError as e:
            log.warning("Unable to read %s: %s", path, e)
            return None
        self._check_extension(path, kind)
        return ResolvedMedia(entry=entry, file_path=path, container_kind=kind, match=how)

    def _check_extension(self, path: Path, kind: ContainerKind) -> None:
        ext = path.suffix.lower()
        expected = (
            ContainerKind.IMAGE if ext in self.image_ext
            else ContainerKind.VIDEO if ext in self.video_ext
            else None
        )
        if expected is not None and expected != kind:
            log.debug("%s: extension says %s, signature says %s", path.name, expected.value, kind.value)
