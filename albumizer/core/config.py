# albumizer/core/config.py
# Loads albumizer settings from a TOML file (defaults + overrides).
# - Reads --config, ALBUMIZER_CONFIG, or an albumizer.toml found from the CWD upwards
# - Normalizes extension lists (lowercase, ensure leading dot)
# - CLI flags are applied on top via Settings.override()

from __future__ import annotations
from pathlib import Path
import os
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import tomli as tomllib  # py3.11+: tomllib in stdlib; using tomli for compatibility

from albumizer.core.errors import ConfigError

CONFIG_FILENAME = "albumizer.toml"


# -------------------- Defaults (used if TOML omits keys) --------------------
_DEFAULTS = {
    "paths": {
        "input": ".",
        "output": "out",
        # where the album manifests live, relative to the export root ("" = root itself)
        "manifest_subdir": "photos_and_videos/album",
    },
    "run": {
        "workers": 4,
        "dry_run": False,
        "skip_photos": False,
        "skip_videos": False,
        "include_comments": True,
        "pass_through_unknown": True,
        "heartbeat": 500,
    },
    "exif": {
        # zone used to render EXIF DateTime strings (they carry no offset)
        "timezone": "UTC",
    },
    "formats": {
        "images": ["jpg", "jpeg", "jpe", "webp"],
        "videos": ["mp4", "mov", "m4v", "3gp"],
    },
}


# -------------------- Read + merge TOML --------------------

def _find_config_path(explicit: Optional[Path] = None) -> Path | None:
    """Find albumizer.toml without user input.
    Priority:
      1) explicit path (--config); must exist
      2) ALBUMIZER_CONFIG
      3) ./albumizer.toml (CWD), then ascend parents from CWD
    """
    if explicit is not None:
        p = Path(explicit).expanduser()
        if not p.exists():
            raise ConfigError(f"config file not found: {p}")
        return p

    cfg_env = os.getenv("ALBUMIZER_CONFIG")
    if cfg_env:
        p = Path(cfg_env).expanduser()
        if p.exists():
            return p

    cur = Path.cwd()
    while True:
        candidate = cur / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        if cur.parent == cur:
            break  # reached filesystem root
        cur = cur.parent

    return None


def load_config(path: Optional[Path] = None) -> dict:
    """Load TOML from best match path or return {} if not found."""
    found = _find_config_path(path)
    if found is None:
        return {}
    try:
        with found.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"unable to read {found}: {e}") from e


def _norm_ext_list(exts) -> set[str]:
    """
    Normalize extension strings: ensure leading dot and lowercase.
    Accepts 'jpg' or '.jpg' and returns '.jpg'.
    """
    out: set[str] = set()
    for e in exts or []:
        e = (str(e) if e is not None else "").strip().lower()
        if not e:
            continue
        if not e.startswith("."):
            e = "." + e
        out.add(e)
    return out


# -------------------- Settings --------------------
class Settings:
    """
    Effective run settings. Relative output paths are resolved against the
    current directory, not the export root.
    """
    def __init__(self, cfg: Optional[dict] = None) -> None:
        cfg = cfg or {}
        paths = {**_DEFAULTS["paths"], **cfg.get("paths", {})}
        run = {**_DEFAULTS["run"], **cfg.get("run", {})}
        exif = {**_DEFAULTS["exif"], **cfg.get("exif", {})}
        fmts = {**_DEFAULTS["formats"], **cfg.get("formats", {})}

        self.input: Path = Path(paths["input"]).expanduser()
        self.output: Path = Path(paths["output"]).expanduser()
        self.manifest_subdir: str = str(paths.get("manifest_subdir") or "")

        self.workers: int = int(run["workers"])
        self.dry_run: bool = bool(run["dry_run"])
        self.skip_photos: bool = bool(run["skip_photos"])
        self.skip_videos: bool = bool(run["skip_videos"])
        self.include_comments: bool = bool(run["include_comments"])
        self.pass_through_unknown: bool = bool(run["pass_through_unknown"])
        self.heartbeat: int = int(run["heartbeat"])

        self.timezone_name: str = str(exif["timezone"])

        self.image_ext: set[str] = _norm_ext_list(fmts.get("images"))
        self.video_ext: set[str] = _norm_ext_list(fmts.get("videos"))

        self.validate()

    def validate(self) -> None:
        if self.workers < 1:
            raise ConfigError(f"[run].workers must be >= 1 (got {self.workers})")
        _ = self.timezone  # raises on a bad zone name

    @property
    def timezone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"unknown [exif].timezone: {self.timezone_name!r}") from e

    def override(self, **values) -> "Settings":
        """Apply CLI overrides; None means 'not given on the command line'."""
        for key, value in values.items():
            if value is None:
                continue
            if not hasattr(self, key):
                raise ConfigError(f"unknown setting: {key}")
            if key in ("input", "output"):
                value = Path(value).expanduser()
            setattr(self, key, value)
        self.validate()
        return self

    def __repr__(self) -> str:
        return (
            f"Settings(input={self.input}, output={self.output}, "
            f"manifest_subdir={self.manifest_subdir!r}, workers={self.workers}, "
            f"dry_run={self.dry_run}, skip_photos={self.skip_photos}, "
            f"skip_videos={self.skip_videos}, include_comments={self.include_comments}, "
            f"pass_through_unknown={self.pass_through_unknown}, timezone={self.timezone_name})"
        )


def load_settings(path: Optional[Path] = None) -> Settings:
    """Merge user config with defaults."""
    return Settings(load_config(path))
