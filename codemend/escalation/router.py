from __future__ import annotations

import asyncio
from functools import partial
from typing import List, Optional, Sequence, Union

import structlog

from codemend.config.remediation import ESCALATION_ORDER, StrategyConfig
from codemend.errors import StrategyFailure
from codemend.escalation.base import EscalationHandler
from codemend.learning.loop import ESCALATED, LearningLoop
from codemend.models import AttemptOutcome, FixAttempt, Issue, IssueState
from codemend.store.issue_store import IssueStore
from codemend.strategies.base import Proposal, StrategyContext

logger = structlog.get_logger()


class EscalationRouter:
    """
    Takes over issues the strategy chain could not fix.

    Handlers run in priority order and each proposal goes through the regular
    apply path. When every handler has failed the issue lands in NeedsReview.
    """

    def __init__(
        self,
        handlers: Sequence[EscalationHandler],
        issues: IssueStore,
        config: Optional[StrategyConfig] = None,
        learning: Optional[LearningLoop] = None,
    ):
        rank = {name: index for index, name in enumerate(ESCALATION_ORDER)}
        self.handlers: List[EscalationHandler] = sorted(handlers, key=lambda h: rank.get(h.name, len(rank)))
        self.issues = issues
        self.config = config or StrategyConfig()
        self.learning = learning

    async def escalate(self, issue: Issue, ctx: StrategyContext) -> Union[FixAttempt, Issue]:
        """Returns the applied attempt, or the issue once it is waiting for a human."""
        if ctx.apply is None:
            raise ValueError("Escalation needs an apply callback on the strategy context")
        loop = asyncio.get_running_loop()
        log = logger.bind(issue_id=issue.id, rule=issue.rule_id, file=issue.file_path)

        if issue.state != IssueState.ESCALATED:
            issue = await loop.run_in_executor(ctx.executor, self.issues.transition, issue.id, IssueState.ESCALATED)
        if self.learning:
            self.learning.record(issue, None, ESCALATED)
        log.info("issue_escalated", handlers=[h.name for h in self.handlers if h.can_handle(issue)])

        for handler in self.handlers:
            if not handler.can_handle(issue):
                continue
            await loop.run_in_executor(ctx.executor, ctx.reload)
            try:
                proposal = await loop.run_in_executor(ctx.executor, handler.propose, issue, ctx)
            except StrategyFailure as e:
                log.warning("escalation_handler_failed", handler=handler.name, error=e.reason)
                await self._record(ctx, issue, handler, AttemptOutcome.STRATEGY_FAILURE, error=e.reason)
                continue
            except Exception as e:
                log.exception("escalation_handler_crashed", handler=handler.name)
                error = f"{type(e).__name__}: {e}"
                await self._record(ctx, issue, handler, AttemptOutcome.STRATEGY_FAILURE, error=error)
                continue

            if proposal is None:
                await self._record(ctx, issue, handler, AttemptOutcome.NO_ATTEMPT)
                continue
            if proposal.confidence < self.config.escalation_floor:
                log.info("escalation_below_floor", handler=handler.name, confidence=proposal.confidence)
                await self._record(ctx, issue, handler, AttemptOutcome.BELOW_FLOOR, proposal)
                continue

            attempt = await self._record(ctx, issue, handler, AttemptOutcome.PROPOSED, proposal)
            result = await ctx.apply(issue, attempt)
            if result.applied:
                log.info("escalation_applied", handler=handler.name)
                return result.attempt
            if result.issue.state == IssueState.NEEDS_REVIEW:
                return result.issue
            issue = await loop.run_in_executor(ctx.executor, self.issues.transition, issue.id, IssueState.ESCALATED)

        issue = await loop.run_in_executor(ctx.executor, self.issues.transition, issue.id, IssueState.NEEDS_REVIEW)
        log.warning("escalation_exhausted")
        return await loop.run_in_executor(ctx.executor, self.issues.require, issue.id)

    async def _record(
        self,
        ctx: StrategyContext,
        issue: Issue,
        handler: EscalationHandler,
        outcome: AttemptOutcome,
        proposal: Optional[Proposal] = None,
        error: Optional[str] = None,
    ) -> FixAttempt:
        attempt = FixAttempt(
            issue_id=issue.id,
            strategy=f"escalation.{handler.name}",
            raw_confidence=proposal.confidence if proposal else 0.0,
            calibrated_confidence=proposal.confidence if proposal else 0.0,
            patch=proposal.patch if proposal else None,
            outcome=outcome,
            escalation_handler=handler.name,
            error=error,
        )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(ctx.executor, partial(self.issues.add_attempt, attempt))
