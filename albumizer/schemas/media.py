# albumizer/schemas/media.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


class Comment(BaseModel):
    model_config = ConfigDict(frozen=True)

    author: str = ""
    text: str
    timestamp: Optional[datetime] = None


class RecordKind(str, Enum):
    """FULL: every recognised field decoded. PARTIAL: see MediaEntry.missing."""
    FULL = "full"
    PARTIAL = "partial"


class MediaEntry(BaseModel):
    """One manifest-declared media item."""
    model_config = ConfigDict(frozen=True)

    album_name: str = Field(min_length=1)
    source_reference: Optional[str] = None
    capture_time: Optional[datetime] = None
    geolocation: Optional[GeoPoint] = None
    caption: Optional[str] = None
    comments: Tuple[Comment, ...] = ()
    manifest_path: Optional[Path] = None
    ordinal: int = 0
    kind: RecordKind = RecordKind.FULL
    missing: Tuple[str, ...] = ()


class ContainerKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    UNKNOWN = "unknown"


class ResolvedMedia(BaseModel):
    """A MediaEntry bound to the file that was found for it."""
    model_config = ConfigDict(frozen=True)

    entry: MediaEntry
    file_path: Path
    container_kind: ContainerKind
    match: str = "exact"


class AuthoritativeValues(BaseModel):
    """What a codec writes into a file; None leaves the existing value alone."""
    model_config = ConfigDict(frozen=True)

    capture_time: Optional[datetime] = None
    geolocation: Optional[GeoPoint] = None
    caption: Optional[str] = None

    def is_empty(self) -> bool:
        return self.capture_time is None and self.geolocation is None and not self.caption


class EntryState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    METADATA_APPLIED = "metadata_applied"
    PLACED = "placed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    NO_MANIFEST_MATCH = "NoManifestMatch"
    FILE_NOT_FOUND = "FileNotFound"
    UNSUPPORTED_CONTAINER = "UnsupportedContainer"
    METADATA_WRITE_FAILED = "MetadataWriteFailed"
    FILTERED = "Filtered"
    DUPLICATE_ENTRY = "DuplicateEntry"


class EntryResult(BaseModel):
    entry: MediaEntry
    state: EntryState
    reason: Optional[SkipReason] = None
    source_path: Optional[Path] = None
    destination: Optional[Path] = None
    metadata_applied: bool = False
    detail: Optional[str] = None


class ManifestFailure(BaseModel):
    path: Path
    reason: str


class RunSummary(BaseModel):
    processed: int = 0
    placed: int = 0
    passthrough: int = 0
    skipped: Dict[SkipReason, int] = Field(default_factory=dict)
    manifest_failures: List[ManifestFailure] = Field(default_factory=list)
    results: List[EntryResult] = Field(default_factory=list)

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    def record(self, result: EntryResult) -> None:
        self.results.append(result)
        self.processed += 1
        if result.state == EntryState.SKIPPED:
            self.skipped[result.reason] = self.skipped.get(result.reason, 0) + 1
        elif result.state == EntryState.PLACED:
            self.placed += 1
            if not result.metadata_applied:
                self.passthrough += 1

    def attention_by_album(self) -> Dict[str, List[EntryResult]]:
        """Skipped and pass-through entries, grouped by album, in manifest order."""
        out: Dict[str, List[EntryResult]] = {}
        for r in sorted(self.results, key=lambda r: r.entry.ordinal):
            if r.state == EntryState.SKIPPED or (r.state == EntryState.PLACED and not r.metadata_applied):
                out.setdefault(r.entry.album_name, []).append(r)
        return out
