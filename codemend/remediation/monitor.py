from __future__ import annotations

from typing import Dict, List, Optional, Set

import structlog
from pydantic import BaseModel, Field

from codemend.learning.loop import NEEDS_REVIEW, RESOLVED, ROLLED_BACK, LearningLoop
from codemend.models import AttemptOutcome, FixAttempt, Issue, IssueState
from codemend.remediation.applier import Applier
from codemend.remediation.backup import BackupManager
from codemend.store.issue_store import IssueStore

logger = structlog.get_logger()


class MonitorReport(BaseModel):
    resolved: List[str] = Field(default_factory=list)
    rolled_back: List[str] = Field(default_factory=list)
    needs_review: List[str] = Field(default_factory=list)
    restored_files: Set[str] = Field(default_factory=set)


class MonitoringWindow:
    """
    Watches applied fixes over the next detector passes of their file.

    A fix regresses when its fingerprint shows up at least as often as it did
    when the fix was applied. Regressions are undone together with every fix
    applied to the same file after them; clean passes count down to Resolved.
    """

    def __init__(
        self,
        issues: IssueStore,
        applier: Applier,
        backups: BackupManager,
        learning: Optional[LearningLoop] = None,
    ):
        self.issues = issues
        self.applier = applier
        self.backups = backups
        self.learning = learning

    def observe(self, project: str, file_path: str, observed: Dict[str, int]) -> MonitorReport:
        report = MonitorReport()
        handled: Set[str] = set()
        for issue, attempt in self.issues.monitored_attempts(project, file_path):
            if issue.id in handled:
                continue
            handled.add(issue.id)
            count = observed.get(issue.fingerprint, 0)
            if attempt.occurrences_at_apply and count >= attempt.occurrences_at_apply:
                handled.update(self._regress(project, issue, attempt, count, report))
            else:
                self._clean_pass(issue, attempt, report)
        return report

    def _clean_pass(self, issue: Issue, attempt: FixAttempt, report: MonitorReport) -> None:
        remaining = attempt.monitor_passes_remaining - 1
        if remaining > 0:
            self.issues.update_attempt(attempt.id, monitor_passes_remaining=remaining)
            return
        attempt = self.issues.update_attempt(attempt.id, monitor_passes_remaining=0, outcome=AttemptOutcome.RESOLVED)
        for backup_path in attempt.backups.values():
            self.backups.discard(backup_path)
        issue = self.issues.transition(issue.id, IssueState.RESOLVED)
        report.resolved.append(issue.id)
        logger.info("fix_resolved", issue_id=issue.id, strategy=attempt.strategy, file=issue.file_path)
        if self.learning:
            self.learning.record(issue, attempt, RESOLVED)

    def _regress(self, project: str, issue: Issue, attempt: FixAttempt, count: int, report: MonitorReport) -> Set[str]:
        log = logger.bind(issue_id=issue.id, file=issue.file_path, observed=count, at_apply=attempt.occurrences_at_apply)
        log.warning("fix_regressed")

        # Everything applied to the same files after this attempt has to come off first, newest first.
        later = {}
        for path in attempt.post_apply_hashes:
            entries = self.issues.applied_attempts_touching(project, path)
            ids = [a.id for _, a in entries]
            if attempt.id not in ids:
                continue
            for other_issue, other in entries[ids.index(attempt.id) + 1:]:
                later[other.id] = (other_issue, other)
        ordered = sorted(later.values(), key=lambda pair: (pair[1].applied_at, pair[1].id), reverse=True)

        touched = {issue.id}
        for other_issue, other in ordered:
            result = self.applier.rollback(other_issue, other, reason=f"rolled back with regressed fix for {issue.id}", kind="collateral")
            if not result.restored:
                self._changed_externally(issue, attempt, result.detail, report)
                return touched
            touched.add(other_issue.id)
            report.rolled_back.append(other_issue.id)
            report.restored_files.update(other.post_apply_hashes)
            if self.learning:
                self.learning.record(self.issues.require(other_issue.id), other, ROLLED_BACK)

        result = self.applier.rollback(issue, attempt, reason=f"regression: fingerprint observed {count} time(s)")
        if not result.restored:
            self._changed_externally(issue, attempt, result.detail, report)
            return touched
        report.rolled_back.append(issue.id)
        report.restored_files.update(attempt.post_apply_hashes)
        if self.learning:
            self.learning.record(self.issues.require(issue.id), attempt, ROLLED_BACK)
        return touched

    def _changed_externally(self, issue: Issue, attempt: FixAttempt, detail: str, report: MonitorReport) -> None:
        logger.warning("rollback_refused", issue_id=issue.id, reason=detail)
        self.issues.update_attempt(attempt.id, error=f"rollback refused: {detail}")
        issue = self.issues.transition(issue.id, IssueState.NEEDS_REVIEW)
        report.needs_review.append(issue.id)
        if self.learning:
            self.learning.record(issue, attempt, NEEDS_REVIEW)
