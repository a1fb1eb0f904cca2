# albumizer/core/logs.py
# Console + optional rotating file logging for a reconciliation run.

from __future__ import annotations

import json
import logging
import logging.handlers
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

LOGGER_NAME = "albumizer"


class EnsureContext(logging.Filter):
    """Give every record the context fields the formatters expect."""
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "album"): record.album = "-"
        if not hasattr(record, "file_token"): record.file_token = "-"
        return True


class MaxLevelFilter(logging.Filter):
    """Allow records up to and including `levelno` (drop anything higher)."""
    def __init__(self, levelno: int): super().__init__(); self.levelno = levelno
    def filter(self, record: logging.LogRecord) -> bool: return record.levelno <= self.levelno


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": record.getMessage(),
            "name": record.name,
            "album": getattr(record, "album", None),
            "file_token": getattr(record, "file_token", None),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def entry_logger(album: str, file_token: str) -> logging.LoggerAdapter:
    """Attach album + file token to every log record about one entry."""
    return logging.LoggerAdapter(logging.getLogger(LOGGER_NAME), {"album": album, "file_token": file_token})


def setup_logging(verbose: int = 0, quiet: bool = False, log_level_arg: Optional[str] = None,
                  logs_dir: Optional[Path] = None, json_logs: bool = False) -> logging.Logger:
    """
    Console/File matrix:
      - -q:   console = silent;        file = INFO+
      - none: console = INFO only;     file = INFO+ (INFO & WARNING)
      - -v:   console = INFO+;         file = INFO+
      - -vv:  console = DEBUG;         file = DEBUG
      - --log-level=X: both console & file use X (no special filters)
    The file handler only exists when `logs_dir` is given.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    console_max = None
    if log_level_arg:
        console_level = getattr(logging, log_level_arg.upper())
        file_level = console_level
    elif quiet:
        console_level = logging.CRITICAL   # prints nothing (we don't emit CRITICAL)
        file_level = logging.INFO
    elif verbose >= 2:
        console_level = logging.DEBUG
        file_level = logging.DEBUG
    elif verbose >= 1:
        console_level = logging.INFO
        file_level = logging.INFO
    else:
        # default: console shows ONLY INFO (skips/warnings need -v); file keeps everything
        console_level = logging.INFO
        file_level = logging.INFO
        console_max = MaxLevelFilter(logging.INFO)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.addFilter(EnsureContext())
    if console_max: ch.addFilter(console_max)
    ch.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(ch)

    if logs_dir is not None:
        logs_dir = Path(logs_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        log_path = logs_dir / f"albumizer-{ts}.log"

        fh = logging.handlers.TimedRotatingFileHandler(
            log_path, when="midnight", backupCount=14, encoding="utf-8"
        )
        fh.setLevel(file_level)
        fh.addFilter(EnsureContext())
        if json_logs:
            fh.setFormatter(JsonFormatter())
        else:
            fmt = logging.Formatter(
                "%(asctime)sZ [%(levelname)s] [%(album)s:%(file_token)s] %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S"
            )
            fmt.converter = time.gmtime
            fh.setFormatter(fmt)
        logger.addHandler(fh)
        logger.debug(f"Log file: {log_path}")

    return logger
