from __future__ import annotations

from typing import Optional

import structlog

from codemend.calibration.calibrator import ConfidenceCalibrator
from codemend.models import FixAttempt, Issue
from codemend.remediation.templates import generalize
from codemend.store.pattern_store import PatternStore

logger = structlog.get_logger()

RESOLVED = "resolved"
ROLLED_BACK = "rolled_back"
ESCALATED = "escalated"
NEEDS_REVIEW = "needs_review"
REJECTED = "rejected"

FAILURE_OUTCOMES = {ROLLED_BACK, NEEDS_REVIEW, REJECTED}
OUTCOMES = {RESOLVED, ESCALATED} | FAILURE_OUTCOMES

PATTERN_STRATEGY = "pattern_match"


class LearningLoop:
    """Feeds terminal outcomes back into the calibrator and the pattern store."""

    def __init__(self, calibrator: ConfidenceCalibrator, patterns: PatternStore):
        self.calibrator = calibrator
        self.patterns = patterns

    def record(self, issue: Issue, attempt: Optional[FixAttempt], outcome: str) -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown learning outcome: {outcome}")
        log = logger.bind(issue_id=issue.id, rule=issue.rule_id, outcome=outcome)

        if outcome == ESCALATED or attempt is None:
            log.info("learning_outcome_logged")
            return

        strategy = attempt.strategy
        domain = issue.category.value

        if outcome == RESOLVED:
            self.calibrator.observe(strategy, domain, True, attempt.raw_confidence)
            if strategy == PATTERN_STRATEGY:
                self.patterns.record_success(issue.pattern_key, issue.rule_id, issue.category)
            else:
                self._promote(issue, attempt)
            log.info("learning_success_recorded", strategy=strategy)
            return

        self.calibrator.observe(strategy, domain, False, attempt.raw_confidence)
        if strategy == PATTERN_STRATEGY:
            self.patterns.record_failure(issue.pattern_key, issue.rule_id, issue.category)
        log.info("learning_failure_recorded", strategy=strategy)

    def _promote(self, issue: Issue, attempt: FixAttempt) -> None:
        patch = attempt.patch
        # Multi-file groups and whole-window rewrites do not generalise to a snippet template.
        if patch is None or patch.is_multi_file or not patch.before:
            logger.debug("pattern_promotion_skipped", issue_id=issue.id, strategy=attempt.strategy)
            return
        template = generalize(patch.before, patch.after, patch.imports)
        if template is None:
            return
        template["source_strategy"] = attempt.strategy
        self.patterns.promote(
            issue.pattern_key,
            issue.rule_id,
            issue.category,
            template,
            tags=[issue.rule_id, attempt.strategy],
        )
