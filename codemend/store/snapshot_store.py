from __future__ import annotations

from typing import Dict, Optional

import structlog
from sqlalchemy import select

from codemend.models import FileSnapshot, as_utc
from codemend.store.engine import StorageEngine
from codemend.store.models import FileSnapshotRecord

logger = structlog.get_logger()


class SnapshotStore:
    """Per-file scan cache: content hash, last scan time, health and dirty flag."""

    def __init__(self, storage: StorageEngine):
        self.storage = storage

    def get(self, project: str, path: str) -> Optional[FileSnapshot]:
        with self.storage.session() as session:
            record = self._find(session, project, path)
            return _to_snapshot(record) if record else None

    def all_for_project(self, project: str) -> Dict[str, FileSnapshot]:
        with self.storage.session() as session:
            records = session.execute(
                select(FileSnapshotRecord).where(FileSnapshotRecord.project == project)
            ).scalars().all()
            return {r.path: _to_snapshot(r) for r in records}

    def save(self, snapshot: FileSnapshot) -> FileSnapshot:
        with self.storage.transaction() as session:
            record = self._find(session, snapshot.project, snapshot.path)
            if record is None:
                record = FileSnapshotRecord(project=snapshot.project, path=snapshot.path)
                session.add(record)
            record.content_hash = snapshot.content_hash
            record.last_scanned = snapshot.last_scanned
            record.outstanding_issues = snapshot.outstanding_issues
            record.health_score = snapshot.health_score
            record.dirty = snapshot.dirty
            record.last_error = snapshot.last_error
            session.flush()
            return _to_snapshot(record)

    def mark_dirty(self, project: str, path: str) -> None:
        """Forces the next scan to run detectors on ``path`` even if its hash is unchanged."""
        with self.storage.transaction() as session:
            record = self._find(session, project, path)
            if record is None:
                record = FileSnapshotRecord(project=project, path=path, outstanding_issues=0, health_score=100.0)
                session.add(record)
            record.dirty = True
        logger.info("file_marked_dirty", project=project, path=path)

    @staticmethod
    def _find(session, project: str, path: str) -> Optional[FileSnapshotRecord]:
        return session.execute(
            select(FileSnapshotRecord).where(FileSnapshotRecord.project == project, FileSnapshotRecord.path == path)
        ).scalar_one_or_none()


def _to_snapshot(record: FileSnapshotRecord) -> FileSnapshot:
    return FileSnapshot(
        project=record.project,
        path=record.path,
        content_hash=record.content_hash,
        last_scanned=as_utc(record.last_scanned),
        outstanding_issues=record.outstanding_issues or 0,
        health_score=record.health_score if record.health_score is not None else 100.0,
        dirty=bool(record.dirty),
        last_error=record.last_error,
    )
