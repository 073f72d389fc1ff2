from __future__ import annotations

import shutil
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import structlog

from codemend.models import Backup, utcnow
from codemend.utils.file_utils import compute_hash, write_atomic

logger = structlog.get_logger()


class BackupManager:
    """
    Pre-image copies of files about to be patched.

    Each backup lives in its own directory under ``<root>/<backup_dir>`` so
    multiple pending fixes to the same file never overwrite each other.
    """

    def __init__(self, root: str | Path, backup_dir: str = ".codemend/backups", retention_days: int = 7):
        self.root = Path(root)
        self.backup_root = self.root / backup_dir
        self.retention = timedelta(days=retention_days)

    def create(self, rel_path: str) -> Backup:
        source = self.root / rel_path
        stamp = utcnow().strftime("%Y%m%dT%H%M%S")
        target = self.backup_root / f"{stamp}-{uuid.uuid4().hex[:8]}" / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        logger.debug("backup_created", path=rel_path, backup=str(target))
        return Backup(path=rel_path, backup_path=str(target), content_hash=compute_hash(target))

    def restore(self, rel_path: str, backup_path: str) -> None:
        """Writes the pre-image back over the live file, atomically."""
        source = Path(backup_path)
        if not source.is_file():
            raise FileNotFoundError(f"Backup not found: {backup_path}")
        write_atomic(self.root / rel_path, source.read_bytes())
        logger.info("backup_restored", path=rel_path)

    def discard(self, backup_path: str) -> None:
        path = Path(backup_path)
        if path.exists():
            path.unlink()
        self._remove_empty_parents(path.parent)

    def exists(self, backup_path: str) -> bool:
        return Path(backup_path).is_file()

    def prune_expired(self, now=None) -> int:
        """Removes backup directories older than the retention window. Returns how many went."""
        if not self.backup_root.is_dir():
            return 0
        cutoff = (now or utcnow()) - self.retention
        removed = 0
        for entry in self.backup_root.iterdir():
            if not entry.is_dir():
                continue
            created = _parse_stamp(entry.name)
            if created is not None and created < cutoff:
                shutil.rmtree(entry)
                removed += 1
        if removed:
            logger.info("backups_pruned", count=removed)
        return removed

    def _remove_empty_parents(self, directory: Path) -> None:
        while directory != self.backup_root and self.backup_root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent


def _parse_stamp(name: str) -> Optional[datetime]:
    try:
        return datetime.strptime(name.split("-")[0], "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
