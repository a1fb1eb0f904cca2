# albumizer/services/reconcile.py
# Reconciliation driver.
#   Phase 1 (sequential, manifest order): parse -> resolve -> filter -> plan names
#   Phase 2 (worker pool): read -> rewrite metadata -> write to out/<album>/<name>
# Per entry: Pending -> Resolved -> MetadataApplied -> Placed, or Skipped(reason).
# Only ConfigError escapes run(); everything else ends up in the RunSummary.

from __future__ import annotations

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from albumizer.core.config import Settings
from albumizer.core.errors import MetadataWriteError, StructuralIntegrityError
from albumizer.core.logs import entry_logger
from albumizer.schemas.media import (
    ContainerKind, EntryResult, EntryState, MediaEntry, ResolvedMedia, RunSummary, SkipReason,
)
from albumizer.services.locator import MediaLocator
from albumizer.services.manifest import ManifestParser
from albumizer.services.metadata import authoritative_values, codec_for
from albumizer.utils.fs import read_bytes, safe_dirname, write_bytes

log = logging.getLogger(__name__)


def file_token_for(entry: MediaEntry) -> str:
    ref = entry.source_reference or f"#{entry.ordinal}"
    return hashlib.sha1(ref.encode("utf-8", "ignore")).hexdigest()[:8]


def unique_name(filename: str, taken: Set[str]) -> str:
    """
    First free name in `taken` (compared case-insensitively): IMG.jpg, IMG_1.jpg, IMG_2.jpg ...
    Adds the chosen name to `taken`.
    """
    p = Path(filename)
    stem, ext = p.stem, p.suffix
    candidate = filename
    i = 1
    while candidate.lower() in taken:
        candidate = f"{stem}_{i}{ext}"
        i += 1
    taken.add(candidate.lower())
    return candidate


@dataclass
class PlannedItem:
    resolved: ResolvedMedia
    destination: Path


class Reconciler:
    """Runs one reconciliation pass over an export."""

    def __init__(self, settings: Settings, parser: Optional[ManifestParser] = None,
                 locator: Optional[MediaLocator] = None) -> None:
        self.settings = settings
        self.parser = parser or ManifestParser(settings.input, settings.manifest_subdir)
        self.locator = locator or MediaLocator(
            settings.input,
            exclude=settings.output,
            image_ext=settings.image_ext,
            video_ext=settings.video_ext,
        )
        self.tz = settings.timezone

    # ---------- results ----------

    def _skip(self, entry: MediaEntry, reason: SkipReason, detail: str,
              source: Optional[Path] = None) -> EntryResult:
        ctx = entry_logger(entry.album_name, file_token_for(entry))
        ctx.warning("SKIP [%s] %s / %s: %s", reason.value, entry.album_name,
                    entry.source_reference or "<no uri>", detail)
        return EntryResult(entry=entry, state=EntryState.SKIPPED, reason=reason,
                           source_path=source, detail=detail)

    # ---------- phase 1 ----------

    def plan(self) -> Tuple[List[PlannedItem], List[EntryResult]]:
        """Resolve every entry and fix its destination. Deterministic for a given tree."""
        planned: List[PlannedItem] = []
        skipped: List[EntryResult] = []
        taken: Dict[str, Set[str]] = {}
        placed_sources: Dict[str, Set[Path]] = {}
        album_dirs: Dict[str, str] = {}
        s = self.settings

        for entry in self.parser.iter_entries():
            log.debug("%s #%d %s / %s", EntryState.PENDING.value, entry.ordinal, entry.album_name,
                      entry.source_reference or "<no uri>")
            if not entry.source_reference:
                skipped.append(self._skip(entry, SkipReason.NO_MANIFEST_MATCH, "record has no media reference"))
                continue

            resolved = self.locator.resolve(entry)
            if resolved is None:
                skipped.append(self._skip(entry, SkipReason.FILE_NOT_FOUND, "no matching file in the export"))
                continue
            log.debug("%s %s -> %s (%s, %s)", EntryState.RESOLVED.value, entry.source_reference, resolved.file_path,
                      resolved.match, resolved.container_kind.value)

            kind = resolved.container_kind
            if (kind == ContainerKind.IMAGE and s.skip_photos) or (kind == ContainerKind.VIDEO and s.skip_videos):
                skipped.append(self._skip(entry, SkipReason.FILTERED, f"{kind.value}s are disabled",
                                          resolved.file_path))
                continue
            if kind == ContainerKind.UNKNOWN and not s.pass_through_unknown:
                skipped.append(self._skip(entry, SkipReason.UNSUPPORTED_CONTAINER,
                                          "unrecognised container", resolved.file_path))
                continue

            # albums differing only in case share the first spelling's folder
            spelled = safe_dirname(entry.album_name)
            key = spelled.lower()
            album_dir = album_dirs.setdefault(key, spelled)
            if album_dir != spelled:
                log.debug("Album %r merged into %s/", entry.album_name, album_dir)
            sources = placed_sources.setdefault(key, set())
            if resolved.file_path in sources:
                skipped.append(self._skip(entry, SkipReason.DUPLICATE_ENTRY,
                                          "file already placed in this album", resolved.file_path))
                continue
            sources.add(resolved.file_path)

            name = unique_name(resolved.file_path.name, taken.setdefault(key, set()))
            if name != resolved.file_path.name:
                log.debug("Name collision in %s: %s -> %s", album_dir, resolved.file_path.name, name)
            planned.append(PlannedItem(resolved, s.output / album_dir / name))

        return planned, skipped

    # ---------- phase 2 ----------

    def process(self, item: PlannedItem) -> EntryResult:
        """Rewrite + place one planned entry. Never raises."""
        resolved = item.resolved
        entry = resolved.entry
        src = resolved.file_path
        ctx = entry_logger(entry.album_name, file_token_for(entry))
        try:
            try:
                data = read_bytes(src)
            except OSError as e:
                return self._skip(entry, SkipReason.FILE_NOT_FOUND, f"unreadable: {e}", src)

            values = authoritative_values(entry, self.settings.include_comments)
            codec = codec_for(resolved.container_kind, self.tz)
            applied = False
            if codec is None:
                ctx.warning("METADATA NOT APPLIED %s: unrecognised container; copying as-is", src)
                out = data
            elif values.is_empty():
                ctx.debug("Nothing authoritative for %s; copying as-is", src)
                out, applied = data, True
            else:
                try:
                    out = codec.apply_metadata(data, values)
                    applied = True
                except StructuralIntegrityError as e:
                    ctx.warning("METADATA NOT APPLIED %s: %s; copying as-is", src, e)
                    out = data
                except MetadataWriteError as e:
                    return self._skip(entry, SkipReason.METADATA_WRITE_FAILED, str(e), src)
            if applied:
                ctx.debug("%s %s", EntryState.METADATA_APPLIED.value, src)

            if self.settings.dry_run:
                ctx.debug("[DRY] WRITE %s -> %s", src, item.destination)
            else:
                try:
                    write_bytes(item.destination, out)
                except OSError as e:
                    return self._skip(entry, SkipReason.METADATA_WRITE_FAILED, f"write failed: {e}", src)
                ctx.debug("PLACED %s -> %s", src, item.destination)

            return EntryResult(entry=entry, state=EntryState.PLACED, source_path=src,
                               destination=item.destination, metadata_applied=applied)
        except Exception as e:
            # Catch-all so one bad file doesn't kill the batch
            ctx.exception("Unhandled error while processing %s", src)
            return EntryResult(entry=entry, state=EntryState.SKIPPED, reason=SkipReason.METADATA_WRITE_FAILED,
                               source_path=src, detail=f"unexpected error: {e}")

    def run(self) -> RunSummary:
        self.parser.check()  # ConfigError is fatal

        summary = RunSummary()
        planned, skipped = self.plan()
        for r in skipped:
            summary.record(r)

        hb = self.settings.heartbeat
        with ThreadPoolExecutor(max_workers=self.settings.workers) as pool:
            futures = [pool.submit(self.process, item) for item in planned]
            for n, fut in enumerate(as_completed(futures), start=1):
                summary.record(fut.result())
                if hb > 0 and n % hb == 0:
                    log.info("… %d/%d written, %d skipped", n, len(planned), summary.skipped_total)

        summary.results.sort(key=lambda r: r.entry.ordinal)
        summary.manifest_failures = list(self.parser.failures)
        return summary
