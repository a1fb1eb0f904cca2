# albumizer/utils/fs.py
# Filesystem capabilities used by the pipeline: list, read, write.
# Everything else goes through these so tests can point them at tmp dirs.

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

JUNK_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}
JUNK_PREFIXES = {"._"}  # AppleDouble resource forks like ._IMG_1234.JPG
DIR_IGNORE = {".Spotlight-V100", ".fseventsd", ".Trashes", ".TemporaryItems", "__MACOSX"}

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def list_entries(path: Path) -> List[Tuple[str, bool]]:
    """(name, is_directory) for each entry under `path`, sorted by name."""
    out = []
    with os.scandir(path) as it:
        for e in it:
            try:
                is_dir = e.is_dir()
            except OSError:
                continue
            out.append((e.name, is_dir))
    out.sort()
    return out


def is_junk(name: str) -> bool:
    return name in JUNK_FILES or any(name.startswith(pref) for pref in JUNK_PREFIXES)


def walk_files(root: Path, exclude: Optional[Path] = None) -> Iterator[Path]:
    """
    Yield every non-junk file under `root` in a stable (sorted, depth-first) order.
    `exclude` prunes one directory (e.g. an output folder inside the export).
    """
    exclude_resolved = exclude.resolve() if exclude is not None else None
    stack = [root]
    while stack:
        cur = stack.pop()
        if exclude_resolved is not None and cur.resolve() == exclude_resolved:
            continue
        try:
            entries = list_entries(cur)
        except OSError:
            continue
        subdirs = []
        for name, is_dir in entries:
            if is_dir:
                if name not in DIR_IGNORE and not name.startswith("._"):
                    subdirs.append(cur / name)
            elif not is_junk(name):
                yield cur / name
        stack.extend(reversed(subdirs))


def read_bytes(path: Path) -> bytes:
    return Path(path).read_bytes()


def read_head(path: Path, size: int = 64) -> bytes:
    with Path(path).open("rb") as f:
        return f.read(size)


def write_bytes(path: Path, data: bytes) -> None:
    """Write `data` to `path`, creating parent directories as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def safe_dirname(name: str, fallback: str = "Untitled") -> str:
    """Make an album name usable as a single directory name."""
    s = _UNSAFE_CHARS.sub("_", name).strip().rstrip(". ")
    if s in ("", ".", ".."):
        return fallback
    return s
