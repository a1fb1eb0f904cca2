#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
albumizer — rebuild album folders from an extracted photo/video data export.

Reads the album manifests (JSON) of the export, finds each listed file,
writes the manifest's capture time, location and caption into the file
(EXIF for JPEG/WebP, QuickTime atoms for MP4/MOV) and places it under
<output>/<album>/. The export itself is never modified.

Examples:
  albumizer -i ~/facebook-dump -o ~/albums
  albumizer -i . --dry-run -vv
  albumizer -i . --skip-videos --workers 8 --logs-dir ./logs
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from albumizer import __version__
from albumizer.core.config import Settings, load_settings
from albumizer.core.errors import ConfigError
from albumizer.core.logs import setup_logging
from albumizer.schemas.media import RunSummary
from albumizer.services.reconcile import Reconciler

LOGGER = logging.getLogger("albumizer")

EXIT_OK = 0
EXIT_CONFIG = 2


def log(msg: str, level: int = logging.INFO) -> None:
    LOGGER.log(level, msg)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="albumizer",
        description="Organize photos/videos from a data export into albums, fixing their metadata.",
    )
    parser.add_argument("-i", "--input", default=None, help="Extracted export root (default: .)")
    parser.add_argument("-o", "--output", default=None, help="Destination directory (default: ./out)")
    parser.add_argument("--manifest-subdir", default=None,
                        help="Manifest folder relative to the export root (default: photos_and_videos/album)")
    parser.add_argument("--config", default=None, help="Path to albumizer.toml")
    parser.add_argument("-n", "--dry-run", action="store_true", default=None,
                        help="Resolve and rewrite in memory, but write nothing")
    parser.add_argument("--skip-photos", action="store_true", default=None, help="Leave photos out")
    parser.add_argument("--skip-videos", action="store_true", default=None, help="Leave videos out")
    parser.add_argument("--no-comments", dest="include_comments", action="store_false", default=None,
                        help="Don't append manifest comments to the caption")
    parser.add_argument("--workers", type=int, default=None, help="Parallel workers (default 4)")
    parser.add_argument("--heartbeat", type=int, default=None,
                        help="Emit a progress line every N written files (default 500)")
    parser.add_argument("--logs-dir", default=None, help="Also write a rotating log file here")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Force console log level (overrides -v/-q)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase console verbosity (repeatable)")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal console output")
    parser.add_argument("--json-logs", action="store_true", help="Write JSON-formatted logs to the log file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = load_settings(Path(args.config) if args.config else None)
    return settings.override(
        input=args.input,
        output=args.output,
        manifest_subdir=args.manifest_subdir,
        dry_run=args.dry_run,
        skip_photos=args.skip_photos,
        skip_videos=args.skip_videos,
        include_comments=args.include_comments,
        workers=args.workers,
        heartbeat=args.heartbeat,
    )


def log_summary(summary: RunSummary, dry_run: bool, elapsed: float) -> None:
    placed = f"{summary.placed}(dry)" if dry_run else str(summary.placed)
    log("\n=== Run summary ===")
    log(f"TOTALS: processed={summary.processed}, placed={placed}, "
        f"metadata_not_applied={summary.passthrough}, skipped={summary.skipped_total}")

    if summary.skipped:
        log("Skip reasons this run:")
        for reason, cnt in sorted(summary.skipped.items(), key=lambda kv: (-kv[1], kv[0].value)):
            log(f"  - {reason.value}: {cnt}")

    if summary.manifest_failures:
        log(f"Manifests skipped: {len(summary.manifest_failures)}")
        for f in summary.manifest_failures:
            log(f"  - {f.path}: {f.reason}")

    attention = summary.attention_by_album()
    if attention:
        log("Needs attention:")
        for album, results in attention.items():
            log(f"  {album}:")
            for r in results:
                why = r.reason.value if r.reason else "metadata not applied"
                log(f"    - {r.entry.source_reference or '<no uri>'} [{why}]")

    log(f"\n=== Done. Total time: {elapsed:.1f} seconds ===")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(
        verbose=args.verbose,
        quiet=args.quiet,
        log_level_arg=args.log_level,
        logs_dir=Path(args.logs_dir) if args.logs_dir else None,
        json_logs=args.json_logs,
    )

    try:
        settings = settings_from_args(args)
        log(f"albumizer {__version__}")
        log(f"Mode: {'DRY-RUN' if settings.dry_run else 'WRITE'}")
        LOGGER.debug(f"Effective settings: {settings!r}")

        t0 = time.perf_counter()
        summary = Reconciler(settings).run()
    except ConfigError as e:
        LOGGER.error(f"FATAL: {e}")
        sys.stderr.write(f"FATAL: {e}\n")
        return EXIT_CONFIG

    log_summary(summary, settings.dry_run, time.perf_counter() - t0)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
