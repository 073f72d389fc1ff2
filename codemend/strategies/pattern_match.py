from __future__ import annotations

from typing import Optional

import structlog

from codemend.models import Issue
from codemend.remediation.patch import snippet_candidate
from codemend.remediation.templates import instantiate
from codemend.store.pattern_store import PatternStore
from codemend.strategies.base import BaseStrategy, Proposal, StrategyContext

logger = structlog.get_logger()


class PatternMatchStrategy(BaseStrategy):
    """Replays the fix template learned for the issue's pattern key."""

    name = "pattern_match"

    def __init__(self, patterns: PatternStore):
        self.patterns = patterns

    def propose(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        pattern = self.patterns.get(issue.pattern_key)
        if pattern is None or not pattern.template:
            return None
        after = instantiate(pattern.template, issue.snippet)
        if after is None:
            logger.debug("pattern_template_mismatch", issue_id=issue.id, pattern=issue.pattern_key[:12])
            return None
        candidate = snippet_candidate(
            ctx.rel_path,
            ctx.content,
            issue,
            after,
            pattern.template.get("imports", []),
            description=f"Learned fix for {issue.rule_id} ({pattern.success_count} earlier successes)",
        )
        if candidate is None:
            return None
        confidence = (pattern.success_count + 1) / (pattern.success_count + pattern.failure_count + 2)
        return Proposal(patch=candidate, confidence=confidence, notes=f"pattern {issue.pattern_key[:12]}")
