from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel

from codemend.config.remediation import MonitoringConfig, StrategyConfig
from codemend.learning.loop import NEEDS_REVIEW, ROLLED_BACK, LearningLoop
from codemend.models import AttemptOutcome, Backup, FixAttempt, Issue, IssueState
from codemend.remediation.backup import BackupManager
from codemend.remediation.validator import PatchValidator, ValidationReport
from codemend.store.issue_store import IssueStore
from codemend.utils.file_utils import compute_hash, write_atomic
from codemend.workers import PathLocks

logger = structlog.get_logger()

APPLIED = "applied"
PENDING_REVIEW = "pending_review"
STALE = "stale"
VALIDATION_FAILED = "validation_failed"
COMMIT_FAILED = "commit_failed"


class ApplyResult(BaseModel):
    status: str
    issue: Issue
    attempt: FixAttempt
    report: Optional[ValidationReport] = None
    detail: str = ""

    @property
    def applied(self) -> bool:
        return self.status == APPLIED


class RollbackResult(BaseModel):
    restored: bool
    detail: str = ""


class Applier:
    """
    Validates a candidate patch and commits it to the live tree.

    Live files are only ever written by ``_commit`` after every gate passed,
    and always through an atomic replace. Applies and rollbacks hold the
    applier's path locks for every file they touch, so a rollback started from
    another file's monitoring pass waits for an in-flight apply and vice versa.
    """

    def __init__(
        self,
        root: str | Path,
        issues: IssueStore,
        validator: PatchValidator,
        backups: BackupManager,
        strategies: Optional[StrategyConfig] = None,
        monitoring: Optional[MonitoringConfig] = None,
        learning: Optional[LearningLoop] = None,
        locks: Optional[PathLocks] = None,
    ):
        self.root = Path(root)
        self.issues = issues
        self.validator = validator
        self.backups = backups
        self.strategies = strategies or StrategyConfig()
        self.monitoring = monitoring or MonitoringConfig()
        self.learning = learning
        self.locks = locks or PathLocks()

    def apply(self, issue: Issue, attempt: FixAttempt, auto_apply: bool = True, approved: bool = False) -> ApplyResult:
        if attempt.patch is None or attempt.id is None:
            raise ValueError("apply() needs a persisted attempt carrying a patch")
        patch = attempt.patch
        log = logger.bind(issue_id=issue.id, strategy=attempt.strategy, files=patch.paths)
        issue = self.issues.transition(issue.id, IssueState.VALIDATING)
        with self.locks.hold(patch.paths):
            return self._validate_and_commit(issue, attempt, auto_apply, approved, log)

    def _validate_and_commit(self, issue: Issue, attempt: FixAttempt, auto_apply: bool, approved: bool, log) -> ApplyResult:
        patch = attempt.patch
        stale = [fp.path for fp in patch.files if not self._matches(fp.path, fp.base_hash)]
        if stale:
            log.info("patch_stale", stale=stale)
            attempt = self.issues.update_attempt(
                attempt.id,
                outcome=AttemptOutcome.ROLLED_BACK,
                validation={"rollback": "stale"},
                error=f"Changed since the fix was generated: {', '.join(stale)}",
            )
            issue = self.issues.transition(issue.id, IssueState.ROLLED_BACK)
            return ApplyResult(status=STALE, issue=issue, attempt=attempt, detail=attempt.error or "")

        backups: Dict[str, Backup] = {fp.path: self.backups.create(fp.path) for fp in patch.files}
        report = self.validator.validate(self.root, patch)
        if not report.passed:
            self._discard(backups.values())
            return self._validation_failed(issue, attempt, report)

        if not approved and (not auto_apply or attempt.calibrated_confidence < self.strategies.auto_apply_threshold):
            self._discard(backups.values())
            attempt = self.issues.update_attempt(
                attempt.id, outcome=AttemptOutcome.PENDING_REVIEW, validation=report.as_dict()
            )
            issue = self.issues.transition(issue.id, IssueState.NEEDS_REVIEW)
            log.info("fix_held_for_review", confidence=attempt.calibrated_confidence, auto_apply=auto_apply)
            return ApplyResult(status=PENDING_REVIEW, issue=issue, attempt=attempt, report=report)

        try:
            self._commit(attempt, backups)
        except OSError as e:
            log.error("patch_commit_failed", error=str(e))
            self._discard(backups.values())
            attempt = self.issues.update_attempt(
                attempt.id,
                outcome=AttemptOutcome.ROLLED_BACK,
                validation={**report.as_dict(), "rollback": "commit"},
                error=str(e),
            )
            issue = self.issues.transition(issue.id, IssueState.ROLLED_BACK)
            return ApplyResult(status=COMMIT_FAILED, issue=issue, attempt=attempt, report=report, detail=str(e))

        post_hashes = {fp.path: compute_hash(self.root / fp.path) for fp in patch.files}
        self.issues.update_attempt(attempt.id, validation=report.as_dict())
        attempt = self.issues.mark_applied(
            attempt.id,
            backups={path: b.backup_path for path, b in backups.items()},
            post_apply_hashes=post_hashes,
            monitor_passes=self.monitoring.passes,
            occurrences=issue.occurrences,
        )
        self.issues.transition(issue.id, IssueState.APPLIED)
        issue = self.issues.transition(issue.id, IssueState.MONITORING)
        log.info("fix_applied", confidence=attempt.calibrated_confidence)
        return ApplyResult(status=APPLIED, issue=issue, attempt=attempt, report=report)

    def rollback(self, issue: Issue, attempt: FixAttempt, reason: str, kind: str = "regression") -> RollbackResult:
        """
        Restores every file of an applied attempt from its backups.

        Only restores when each live file still has the hash recorded right
        after the apply; anything else means the file changed underneath us.
        """
        with self.locks.hold(set(attempt.post_apply_hashes) | set(attempt.backups)):
            for path, expected in attempt.post_apply_hashes.items():
                backup_path = attempt.backups.get(path)
                if not backup_path or not self.backups.exists(backup_path):
                    return RollbackResult(restored=False, detail=f"backup for {path} is gone")
                if not self._matches(path, expected):
                    return RollbackResult(restored=False, detail=f"{path} changed externally")

            for path, backup_path in attempt.backups.items():
                self.backups.restore(path, backup_path)
        for backup_path in attempt.backups.values():
            self.backups.discard(backup_path)
        self.issues.clear_applied(attempt.id, AttemptOutcome.ROLLED_BACK, error=reason)
        self.issues.update_attempt(attempt.id, validation={**attempt.validation, "rollback": kind})
        self.issues.transition(issue.id, IssueState.ROLLED_BACK)
        logger.info("fix_rolled_back", issue_id=issue.id, strategy=attempt.strategy, reason=reason, kind=kind)
        return RollbackResult(restored=True)

    def _validation_failed(self, issue: Issue, attempt: FixAttempt, report: ValidationReport) -> ApplyResult:
        failed = report.failed_gate
        attempt = self.issues.update_attempt(
            attempt.id,
            outcome=AttemptOutcome.VALIDATION_FAILED,
            validation=report.as_dict(),
            error=f"{failed.name}: {failed.detail}"[:4000] if failed else "validation failed",
        )
        failures = self.issues.increment_validation_failures(issue.id)
        if failures >= self.strategies.max_validation_failures:
            issue = self.issues.transition(issue.id, IssueState.NEEDS_REVIEW)
            outcome = NEEDS_REVIEW
        else:
            issue = self.issues.transition(issue.id, IssueState.ROLLED_BACK)
            outcome = ROLLED_BACK
        logger.info(
            "fix_validation_failed",
            issue_id=issue.id,
            strategy=attempt.strategy,
            gate=failed.name if failed else None,
            failures=failures,
        )
        if self.learning:
            self.learning.record(issue, attempt, outcome)
        return ApplyResult(status=VALIDATION_FAILED, issue=issue, attempt=attempt, report=report)

    def _commit(self, attempt: FixAttempt, backups: Dict[str, Backup]) -> None:
        """Writes every file of the group; restores the ones already written if any write fails."""
        written: List[str] = []
        try:
            for file_patch in sorted(attempt.patch.files, key=lambda fp: fp.path):
                write_atomic(self.root / file_patch.path, file_patch.content)
                written.append(file_patch.path)
        except OSError:
            for path in written:
                self.backups.restore(path, backups[path].backup_path)
            raise

    def _matches(self, rel_path: str, expected_hash: str) -> bool:
        path = self.root / rel_path
        return path.is_file() and compute_hash(path) == expected_hash

    def _discard(self, backups) -> None:
        for backup in backups:
            self.backups.discard(backup.backup_path)
