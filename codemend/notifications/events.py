from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from codemend.models import FixAttempt, Issue, utcnow

APPLIED = "applied"
NEEDS_REVIEW = "needs_review"
BATCH_COMPLETED = "batch_completed"

EVENT_TYPES = (APPLIED, NEEDS_REVIEW, BATCH_COMPLETED)


class NotificationEvent(BaseModel):
    event_type: str
    project: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


def _attempt_summary(attempt: FixAttempt) -> Dict[str, Any]:
    return {
        "sequence": attempt.sequence,
        "strategy": attempt.strategy,
        "outcome": attempt.outcome.value,
        "raw_confidence": attempt.raw_confidence,
        "calibrated_confidence": attempt.calibrated_confidence,
        "escalation_handler": attempt.escalation_handler,
        "error": attempt.error,
    }


def _issue_summary(issue: Issue) -> Dict[str, Any]:
    return {
        "issue_id": issue.id,
        "file_path": issue.file_path,
        "line": issue.line,
        "rule_id": issue.rule_id,
        "category": issue.category.value,
        "severity": issue.severity.value,
        "message": issue.message,
        "state": issue.state.value,
    }


def applied_event(issue: Issue, attempt: FixAttempt) -> NotificationEvent:
    payload = _issue_summary(issue)
    payload.update(
        strategy=attempt.strategy,
        confidence=attempt.calibrated_confidence,
        files=attempt.patch.paths if attempt.patch else [],
        diff=attempt.diff,
    )
    return NotificationEvent(event_type=APPLIED, project=issue.project, payload=payload)


def needs_review_event(issue: Issue, reason: Optional[str] = None) -> NotificationEvent:
    payload = _issue_summary(issue)
    payload["reason"] = reason
    payload["history"] = [_attempt_summary(a) for a in sorted(issue.attempts, key=lambda a: a.sequence)]
    return NotificationEvent(event_type=NEEDS_REVIEW, project=issue.project, payload=payload)


def batch_completed_event(project: str, summary: Dict[str, Any], errors: Optional[List[str]] = None) -> NotificationEvent:
    return NotificationEvent(event_type=BATCH_COMPLETED, project=project, payload={**summary, "errors": errors or []})
