from __future__ import annotations

import difflib
import textwrap
from typing import Optional

import structlog

from codemend.models import Issue
from codemend.remediation.patch import snippet_candidate
from codemend.remediation.templates import generalize, instantiate
from codemend.store.issue_store import IssueStore
from codemend.strategies.base import BaseStrategy, Proposal, StrategyContext

logger = structlog.get_logger()

SIMILARITY_WEIGHT = 0.9


class CodebaseSimilarityStrategy(BaseStrategy):
    """
    Finds the most similar snippet among fixes that already held in this
    project for the same rule and adapts that fix to the issue at hand.
    """

    name = "codebase_similarity"

    def __init__(self, issues: IssueStore, min_ratio: float = 0.5, neighbours: int = 200):
        self.issues = issues
        self.min_ratio = min_ratio
        self.neighbours = neighbours

    def propose(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        target = textwrap.dedent(issue.snippet)
        best = None
        for neighbour, attempt in self.issues.resolved_attempts(issue.project, issue.rule_id, self.neighbours):
            patch = attempt.patch
            if neighbour.id == issue.id or patch is None or patch.is_multi_file or not patch.before:
                continue
            ratio = difflib.SequenceMatcher(None, target, textwrap.dedent(patch.before)).ratio()
            if ratio < self.min_ratio or (best is not None and ratio <= best[0]):
                continue
            template = generalize(patch.before, patch.after, patch.imports)
            after = instantiate(template, issue.snippet) if template else None
            if after is None:
                continue
            best = (ratio, attempt, after)

        if best is None:
            return None
        ratio, attempt, after = best
        candidate = snippet_candidate(
            ctx.rel_path,
            ctx.content,
            issue,
            after,
            attempt.patch.imports,
            description=f"Adapted from fix #{attempt.id} ({ratio:.0%} similar)",
        )
        if candidate is None:
            return None
        logger.debug("similar_fix_found", issue_id=issue.id, neighbour=attempt.id, ratio=round(ratio, 3))
        return Proposal(patch=candidate, confidence=SIMILARITY_WEIGHT * ratio, notes=f"neighbour attempt {attempt.id}")
