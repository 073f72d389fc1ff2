from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, floor: "Severity") -> bool:
        return self.rank >= floor.rank


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class Category(str, Enum):
    SYNTAX = "syntax"
    SECURITY = "security"
    PERFORMANCE = "performance"
    STYLE = "style"
    RELIABILITY = "reliability"
    DEPENDENCY = "dependency"


class IssueState(str, Enum):
    DETECTED = "detected"
    ATTEMPTING = "attempting"
    VALIDATING = "validating"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    MONITORING = "monitoring"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    NEEDS_REVIEW = "needs_review"
    DISMISSED = "dismissed"


# Legal edges of the per-issue state machine. Resolved issues re-enter at
# Detected when the same fingerprint is detected again in the same file.
TRANSITIONS: Dict[IssueState, FrozenSet[IssueState]] = {
    IssueState.DETECTED: frozenset({IssueState.ATTEMPTING, IssueState.RESOLVED}),
    IssueState.ATTEMPTING: frozenset({
        IssueState.VALIDATING, IssueState.ESCALATED, IssueState.ROLLED_BACK, IssueState.RESOLVED,
    }),
    IssueState.VALIDATING: frozenset({
        IssueState.APPLIED, IssueState.ROLLED_BACK, IssueState.NEEDS_REVIEW,
    }),
    IssueState.APPLIED: frozenset({IssueState.MONITORING, IssueState.ROLLED_BACK}),
    IssueState.ROLLED_BACK: frozenset({
        IssueState.ATTEMPTING, IssueState.ESCALATED, IssueState.NEEDS_REVIEW, IssueState.RESOLVED,
    }),
    IssueState.MONITORING: frozenset({
        IssueState.RESOLVED, IssueState.ROLLED_BACK, IssueState.ESCALATED, IssueState.NEEDS_REVIEW,
    }),
    IssueState.ESCALATED: frozenset({
        IssueState.VALIDATING, IssueState.NEEDS_REVIEW, IssueState.RESOLVED,
    }),
    IssueState.NEEDS_REVIEW: frozenset({
        IssueState.VALIDATING, IssueState.RESOLVED, IssueState.DISMISSED,
    }),
    IssueState.RESOLVED: frozenset({IssueState.DETECTED}),
    IssueState.DISMISSED: frozenset(),
}

CLOSED_STATES: FrozenSet[IssueState] = frozenset({IssueState.RESOLVED, IssueState.DISMISSED})
OPEN_STATES: FrozenSet[IssueState] = frozenset(set(IssueState) - CLOSED_STATES)
# Open issues the scheduler should hand to a worker.
ACTIONABLE_STATES: FrozenSet[IssueState] = frozenset({
    IssueState.DETECTED, IssueState.ROLLED_BACK, IssueState.ATTEMPTING, IssueState.VALIDATING,
    IssueState.ESCALATED,
})


class AttemptOutcome(str, Enum):
    NO_ATTEMPT = "no_attempt"
    BELOW_FLOOR = "below_floor"
    STRATEGY_FAILURE = "strategy_failure"
    PROPOSED = "proposed"
    VALIDATION_FAILED = "validation_failed"
    PENDING_REVIEW = "pending_review"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    DEFER = "defer"


class DetectedIssue(BaseModel):
    """A raw finding as returned by a detector, before fingerprinting."""

    rule_id: str
    category: Category
    severity: Severity
    message: str
    line: int
    end_line: Optional[int] = None
    column: int = 0
    snippet: str = ""
    scope: str = "<module>"
    extra: Dict[str, Any] = Field(default_factory=dict)


class FilePatch(BaseModel):
    path: str
    base_hash: str
    content: str
    diff: str = ""


class CandidatePatch(BaseModel):
    """New content for one or more files, plus the before/after source used to build it."""

    files: List[FilePatch]
    before: str = ""
    after: str = ""
    imports: List[str] = Field(default_factory=list)
    description: str = ""

    @property
    def diff(self) -> str:
        return "".join(f.diff for f in self.files)

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    @property
    def is_multi_file(self) -> bool:
        return len(self.files) > 1


class FixAttempt(BaseModel):
    id: Optional[int] = None
    issue_id: str
    sequence: int = 0
    strategy: str
    raw_confidence: float = 0.0
    calibrated_confidence: float = 0.0
    patch: Optional[CandidatePatch] = None
    outcome: AttemptOutcome = AttemptOutcome.PROPOSED
    validation: Dict[str, Any] = Field(default_factory=dict)
    applied: bool = False
    backups: Dict[str, str] = Field(default_factory=dict)
    post_apply_hashes: Dict[str, str] = Field(default_factory=dict)
    monitor_passes_remaining: int = 0
    occurrences_at_apply: int = 0
    escalation_handler: Optional[str] = None
    error: Optional[str] = None
    applied_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def diff(self) -> str:
        return self.patch.diff if self.patch else ""


class Issue(BaseModel):
    id: str
    project: str
    file_path: str
    fingerprint: str
    pattern_key: str
    rule_id: str
    category: Category
    severity: Severity
    message: str
    line: int
    end_line: Optional[int] = None
    column: int = 0
    snippet: str = ""
    scope: str = "<module>"
    extra: Dict[str, Any] = Field(default_factory=dict)
    occurrences: int = 1
    state: IssueState = IssueState.DETECTED
    review_decision: Optional[ReviewDecision] = None
    validation_failures: int = 0
    detected_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    attempts: List[FixAttempt] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    @property
    def applied_attempt(self) -> Optional[FixAttempt]:
        for attempt in self.attempts:
            if attempt.applied:
                return attempt
        return None


class Pattern(BaseModel):
    fingerprint: str
    rule_id: str
    category: Category
    template: Dict[str, Any] = Field(default_factory=dict)
    occurrence_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_seen: datetime = Field(default_factory=utcnow)
    tags: List[str] = Field(default_factory=list)

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        return self.success_count / total if total else 0.0


class FileSnapshot(BaseModel):
    project: str
    path: str
    content_hash: Optional[str] = None
    last_scanned: Optional[datetime] = None
    outstanding_issues: int = 0
    health_score: float = 100.0
    dirty: bool = False
    last_error: Optional[str] = None


class Backup(BaseModel):
    path: str
    backup_path: str
    content_hash: str
    created_at: datetime = Field(default_factory=utcnow)


class Exhausted(BaseModel):
    """Returned by the strategy chain when no strategy cleared its floor."""

    issue_id: str
    attempts: List[FixAttempt] = Field(default_factory=list)


class WorkItem(BaseModel):
    project: str
    root: str
    file_path: str
    content_hash: str
    issues: List[Issue] = Field(default_factory=list)
