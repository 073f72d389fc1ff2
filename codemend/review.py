from __future__ import annotations

from typing import Iterable, List, Optional

import structlog
from pydantic import BaseModel

from codemend.errors import InvalidTransition
from codemend.learning.loop import REJECTED, LearningLoop
from codemend.models import AttemptOutcome, FixAttempt, Issue, IssueState, ReviewDecision
from codemend.remediation.applier import Applier, ApplyResult
from codemend.store.issue_store import IssueStore

logger = structlog.get_logger()


class ReviewOutcome(BaseModel):
    issue: Issue
    decision: ReviewDecision
    apply_result: Optional[ApplyResult] = None


class ReviewService:
    """
    Query and decision API for humans.

    Approving an issue with a held candidate re-runs the apply path with the
    confidence gate lifted; every other gate still applies. Approving an
    issue without a candidate records that it was handled outside the tool.
    """

    def __init__(
        self,
        issues: IssueStore,
        applier: Applier,
        learning: Optional[LearningLoop] = None,
        project: Optional[str] = None,
    ):
        self.issues = issues
        self.applier = applier
        self.learning = learning
        self.project = project

    def list_issues(
        self,
        project: Optional[str] = None,
        file_path: Optional[str] = None,
        states: Optional[Iterable[IssueState]] = None,
    ) -> List[Issue]:
        return self.issues.list_issues(project or self.project, file_path, states)

    def get_history(self, issue_id: str) -> List[FixAttempt]:
        """Every attempt for the issue, oldest first."""
        return self.issues.require(issue_id).attempts

    def decide(self, issue_id: str, decision: ReviewDecision | str) -> ReviewOutcome:
        decision = ReviewDecision(decision)
        issue = self.issues.require(issue_id)
        log = logger.bind(issue_id=issue_id, decision=decision.value)

        if decision == ReviewDecision.DEFER:
            self.issues.set_review_decision(issue_id, decision)
            log.info("review_deferred")
            return ReviewOutcome(issue=self.issues.require(issue_id), decision=decision)

        if issue.state != IssueState.NEEDS_REVIEW:
            raise InvalidTransition(issue_id, issue.state.value, "review")
        self.issues.set_review_decision(issue_id, decision)
        pending = self.issues.pending_review_attempt(issue_id)

        if decision == ReviewDecision.APPROVE:
            if pending is None:
                issue = self.issues.transition(issue_id, IssueState.RESOLVED, expected=[IssueState.NEEDS_REVIEW])
                log.info("review_resolved_manually")
                return ReviewOutcome(issue=issue, decision=decision)
            result = self.applier.apply(issue, pending, auto_apply=True, approved=True)
            log.info("review_approved", status=result.status, strategy=pending.strategy)
            return ReviewOutcome(issue=result.issue, decision=decision, apply_result=result)

        if pending is not None:
            pending = self.issues.update_attempt(pending.id, outcome=AttemptOutcome.REJECTED)
            if self.learning:
                self.learning.record(issue, pending, REJECTED)
        issue = self.issues.transition(issue_id, IssueState.DISMISSED, expected=[IssueState.NEEDS_REVIEW])
        log.info("review_rejected", strategy=pending.strategy if pending else None)
        return ReviewOutcome(issue=issue, decision=decision)
