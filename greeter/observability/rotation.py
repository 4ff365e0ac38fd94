from __future__ import annotations

import gzip
import os
import shutil
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

MAX_BYTES = 500 * 1024 * 1024
BACKUP_COUNT = 3
MAX_AGE_DAYS = 28


def _gz_namer(name: str) -> str:
    return name + ".gz"


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    os.remove(source)


class CompressingRotatingFileHandler(RotatingFileHandler):
    """Size-based rotation that gzips backups and drops those older than ``max_age_days``."""

    def __init__(
        self,
        filename: str | Path,
        *,
        max_bytes: int = MAX_BYTES,
        backup_count: int = BACKUP_COUNT,
        max_age_days: int = MAX_AGE_DAYS,
        compress: bool = True,
    ) -> None:
        path = Path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8", delay=True)
        self.max_age_days = max_age_days
        if compress:
            self.namer = _gz_namer
            self.rotator = _gzip_rotator

    def doRollover(self) -> None:
        super().doRollover()
        self._purge_expired()

    def _purge_expired(self) -> None:
        if self.max_age_days <= 0:
            return

        cutoff = time.time() - self.max_age_days * 86400
        base = Path(self.baseFilename)
        for path in base.parent.glob(base.name + ".*"):
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
