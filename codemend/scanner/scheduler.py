from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

import structlog
from pydantic import BaseModel

from codemend.config.remediation import SchedulerConfig
from codemend.detectors.base import DetectorRegistry
from codemend.errors import DetectorFailure
from codemend.models import ACTIONABLE_STATES, DetectedIssue, FileSnapshot, Issue, Severity, WorkItem, utcnow
from codemend.remediation.monitor import MonitoringWindow, MonitorReport
from codemend.scanner.fingerprint import fingerprint_issues, occurrence_counts
from codemend.scanner.git_changes import GitChanges
from codemend.store.issue_store import IssueStore, SyncResult
from codemend.store.snapshot_store import SnapshotStore
from codemend.utils.file_utils import hash_text, read_text, relative_posix, scan_directory
from codemend.workers import Batch

logger = structlog.get_logger()

SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 25.0,
    Severity.HIGH: 15.0,
    Severity.MEDIUM: 8.0,
    Severity.LOW: 3.0,
}


def health_score(issues: Iterable[Issue]) -> float:
    """0-100, lowered by every outstanding issue according to its severity."""
    penalty = sum(SEVERITY_WEIGHTS[issue.severity] for issue in issues if issue.is_open)
    return max(0.0, 100.0 - penalty)


class ScanStats(BaseModel):
    files_seen: int = 0
    files_scanned: int = 0
    cache_hits: int = 0
    detector_failures: int = 0
    issues_created: int = 0
    issues_reopened: int = 0
    issues_closed: int = 0
    resolved: int = 0
    rolled_back: int = 0
    needs_review: int = 0

    def add_sync(self, sync: SyncResult) -> None:
        self.issues_created += sync.created
        self.issues_reopened += sync.reopened
        self.issues_closed += sync.closed

    def add_monitor(self, report: Optional[MonitorReport]) -> None:
        if report is None:
            return
        self.resolved += len(report.resolved)
        self.rolled_back += len(report.rolled_back)
        self.needs_review += len(report.needs_review)


class Scanner:
    """
    Picks the files of a project that need attention and runs detectors on them.

    Files are visited in tiers: files with open issues, files changed in git or
    marked dirty, unhealthy files (worst first), then everything else. An
    unchanged file whose snapshot is fresh costs a hash and nothing more.
    """

    def __init__(
        self,
        project: str,
        registry: DetectorRegistry,
        issues: IssueStore,
        snapshots: SnapshotStore,
        monitor: Optional[MonitoringWindow] = None,
        config: Optional[SchedulerConfig] = None,
        concurrency: int = 4,
        executor: Optional[Executor] = None,
    ):
        self.project = project
        self.registry = registry
        self.issues = issues
        self.snapshots = snapshots
        self.monitor = monitor
        self.config = config or SchedulerConfig()
        self.concurrency = max(1, concurrency)
        self.executor = executor

    def select(self, root: str | Path) -> List[str]:
        root = Path(root).resolve()
        files = [
            relative_posix(p, root)
            for p in scan_directory(str(root), self.config.ignore_paths, self.registry.extensions)
        ]
        snapshots = self.snapshots.all_for_project(self.project)
        open_files = self.issues.files_with_open_issues(self.project)
        changed = GitChanges(root).changed_files(self.config.recent_commits)
        changed |= {path for path, snap in snapshots.items() if snap.dirty}

        tiers: Dict[int, List[Tuple[float, str]]] = {1: [], 2: [], 3: [], 4: []}
        for path in files:
            snapshot = snapshots.get(path)
            if path in open_files:
                tiers[1].append((0.0, path))
            elif path in changed:
                tiers[2].append((0.0, path))
            elif snapshot is not None and snapshot.health_score < self.config.health_threshold:
                tiers[3].append((snapshot.health_score, path))
            else:
                tiers[4].append((0.0, path))
        ordered: List[str] = []
        for tier in (1, 2, 3, 4):
            ordered.extend(path for _, path in sorted(tiers[tier]))
        return ordered

    async def scan(
        self,
        root: str | Path,
        batch: Optional[Batch] = None,
        stats: Optional[ScanStats] = None,
    ) -> AsyncIterator[WorkItem]:
        root = Path(root).resolve()
        stats = stats if stats is not None else ScanStats()
        loop = asyncio.get_running_loop()
        files = await loop.run_in_executor(self.executor, self.select, root)
        stats.files_seen += len(files)
        logger.info("scan_started", project=self.project, root=str(root), files=len(files))

        for start in range(0, len(files), self.concurrency):
            if batch is not None and batch.cancelled:
                logger.info("scan_cancelled", project=self.project, remaining=len(files) - start)
                return
            chunk = files[start:start + self.concurrency]
            items = await asyncio.gather(*(self.scan_file(root, path, stats) for path in chunk))
            for item in items:
                if item is not None:
                    yield item

    async def rescan_file(self, root: str | Path, rel_path: str, stats: Optional[ScanStats] = None) -> Optional[WorkItem]:
        """A forced detector pass, used after fixes landed in ``rel_path``."""
        return await self.scan_file(Path(root).resolve(), rel_path, stats, force=True)

    async def scan_file(
        self,
        root: Path,
        rel_path: str,
        stats: Optional[ScanStats] = None,
        force: bool = False,
    ) -> Optional[WorkItem]:
        stats = stats if stats is not None else ScanStats()
        loop = asyncio.get_running_loop()
        path = root / rel_path
        snapshot = await loop.run_in_executor(self.executor, self.snapshots.get, self.project, rel_path)
        try:
            content = await loop.run_in_executor(self.executor, read_text, path)
        except (OSError, UnicodeDecodeError) as e:
            stats.detector_failures += 1
            logger.warning("file_unreadable", file=rel_path, error=str(e))
            failure = DetectorFailure(rel_path, f"unreadable: {e}")
            last_hash = snapshot.content_hash if snapshot else None
            await loop.run_in_executor(self.executor, self._record_failure, rel_path, last_hash, snapshot, failure)
            return None
        content_hash = hash_text(content)

        if not force and self._is_fresh(snapshot, content_hash):
            stats.cache_hits += 1
            pending = await loop.run_in_executor(
                self.executor, partial(self.issues.list_issues, self.project, rel_path, ACTIONABLE_STATES)
            )
            if not pending:
                return None
            return WorkItem(project=self.project, root=str(root), file_path=rel_path, content_hash=content_hash, issues=pending)

        try:
            detected = await self._detect(rel_path, content)
        except DetectorFailure as e:
            stats.detector_failures += 1
            logger.warning("detector_failed", file=rel_path, reason=e.reason)
            await loop.run_in_executor(self.executor, self._record_failure, rel_path, content_hash, snapshot, e)
            return None

        stats.files_scanned += 1
        sync, report, content_hash = await loop.run_in_executor(
            self.executor, self._ingest, root, rel_path, content, content_hash, detected
        )
        stats.add_sync(sync)
        stats.add_monitor(report)
        issues = [i for i in sync.issues if i.state in ACTIONABLE_STATES]
        return WorkItem(project=self.project, root=str(root), file_path=rel_path, content_hash=content_hash, issues=issues)

    def mark_dirty(self, rel_path: str) -> None:
        self.snapshots.mark_dirty(self.project, rel_path)

    async def _detect(self, rel_path: str, content: str) -> List[DetectedIssue]:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self.executor, self.registry.detect, rel_path, content),
                timeout=self.config.detector_timeout,
            )
        except asyncio.TimeoutError:
            raise DetectorFailure(rel_path, f"timed out after {self.config.detector_timeout}s")
        except DetectorFailure:
            raise
        except Exception as e:
            # Detectors are plugins; whatever they raise stays with this file.
            raise DetectorFailure(rel_path, f"{type(e).__name__}: {e}") from e

    def _ingest(
        self,
        root: Path,
        rel_path: str,
        content: str,
        content_hash: str,
        detected: List[DetectedIssue],
    ) -> Tuple[SyncResult, Optional[MonitorReport], str]:
        findings = fingerprint_issues(detected)
        report = None
        if self.monitor is not None:
            report = self.monitor.observe(self.project, rel_path, occurrence_counts(findings))
            for other in report.restored_files - {rel_path}:
                self.snapshots.mark_dirty(self.project, other)
            if rel_path in report.restored_files:
                # A rollback rewrote this file; what we detected is gone.
                content = read_text(root / rel_path)
                content_hash = hash_text(content)
                findings = fingerprint_issues(self.registry.detect(rel_path, content))

        sync = self.issues.sync_file(self.project, rel_path, findings)
        self.snapshots.save(
            FileSnapshot(
                project=self.project,
                path=rel_path,
                content_hash=content_hash,
                last_scanned=utcnow(),
                outstanding_issues=len(sync.issues),
                health_score=health_score(sync.issues),
                dirty=False,
                last_error=None,
            )
        )
        logger.debug(
            "file_scanned",
            file=rel_path,
            findings=len(findings),
            created=sync.created,
            closed=sync.closed,
        )
        return sync, report, content_hash

    def _record_failure(
        self,
        rel_path: str,
        content_hash: Optional[str],
        previous: Optional[FileSnapshot],
        error: DetectorFailure,
    ) -> None:
        snapshot = previous.model_copy() if previous else FileSnapshot(project=self.project, path=rel_path)
        snapshot.content_hash = content_hash
        snapshot.last_scanned = utcnow()
        snapshot.last_error = error.reason
        self.snapshots.save(snapshot)

    def _is_fresh(self, snapshot: Optional[FileSnapshot], content_hash: str) -> bool:
        if snapshot is None or snapshot.dirty or snapshot.last_error:
            return False
        if snapshot.content_hash != content_hash:
            return False
        ttl = self.config.cache_ttl_seconds
        if ttl and snapshot.last_scanned is not None:
            return utcnow() - snapshot.last_scanned <= timedelta(seconds=ttl)
        return True

