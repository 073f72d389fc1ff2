from __future__ import annotations

import asyncio
from functools import partial
from typing import Iterable, List, Optional, Sequence, Set, Union

import structlog

from codemend.calibration.calibrator import ConfidenceCalibrator
from codemend.config.remediation import STRATEGY_ORDER, StrategyConfig
from codemend.errors import ExternalServiceFailure, StrategyFailure
from codemend.models import AttemptOutcome, Exhausted, FixAttempt, Issue
from codemend.store.issue_store import IssueStore
from codemend.strategies.base import BaseStrategy, Proposal, StrategyContext

logger = structlog.get_logger()

# Outcomes that rule a strategy out for the rest of an issue's life.
_SPENT_OUTCOMES = {AttemptOutcome.VALIDATION_FAILED, AttemptOutcome.REJECTED}


def spent_strategies(attempts: Iterable[FixAttempt]) -> Set[str]:
    """Strategies whose candidate for this issue failed validation, was rejected or regressed."""
    spent = set()
    for attempt in attempts:
        if attempt.outcome in _SPENT_OUTCOMES:
            spent.add(attempt.strategy)
        elif attempt.outcome == AttemptOutcome.ROLLED_BACK and attempt.validation.get("rollback") == "regression":
            spent.add(attempt.strategy)
    return spent


class StrategyChain:
    """
    Runs the fix strategies in their fixed order and stops at the first
    proposal whose calibrated confidence clears that strategy's floor.

    Every invocation is recorded as a FixAttempt, including the ones that
    produced nothing or fell below the floor.
    """

    def __init__(
        self,
        strategies: Sequence[BaseStrategy],
        calibrator: ConfidenceCalibrator,
        issues: IssueStore,
        config: Optional[StrategyConfig] = None,
        enabled: Optional[Iterable[str]] = None,
    ):
        rank = {name: index for index, name in enumerate(STRATEGY_ORDER)}
        self.strategies: List[BaseStrategy] = sorted(strategies, key=lambda s: rank.get(s.name, len(rank)))
        self.calibrator = calibrator
        self.issues = issues
        self.config = config or StrategyConfig()
        self.enabled = set(enabled) if enabled is not None else None

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.strategies]

    async def resolve(
        self,
        issue: Issue,
        ctx: StrategyContext,
        skip: Iterable[str] = (),
    ) -> Union[FixAttempt, Exhausted]:
        skip = set(skip)
        recorded: List[FixAttempt] = []
        log = logger.bind(issue_id=issue.id, rule=issue.rule_id, file=issue.file_path)

        for strategy in self.strategies:
            if strategy.name in skip or (self.enabled is not None and strategy.name not in self.enabled):
                continue
            try:
                proposal = await strategy.attempt(issue, ctx)
            except ExternalServiceFailure as e:
                log.warning("strategy_service_failed", strategy=strategy.name, error=str(e))
                recorded.append(await self._record(issue, ctx, strategy.name, AttemptOutcome.NO_ATTEMPT, error=str(e)))
                continue
            except StrategyFailure as e:
                log.warning("strategy_failed", strategy=strategy.name, error=e.reason)
                recorded.append(await self._record(issue, ctx, strategy.name, AttemptOutcome.STRATEGY_FAILURE, error=e.reason))
                continue
            except Exception as e:
                # A crashing strategy is that strategy's failure, not the issue's.
                log.exception("strategy_crashed", strategy=strategy.name)
                error = f"{type(e).__name__}: {e}"
                recorded.append(await self._record(issue, ctx, strategy.name, AttemptOutcome.STRATEGY_FAILURE, error=error))
                continue

            if proposal is None:
                recorded.append(await self._record(issue, ctx, strategy.name, AttemptOutcome.NO_ATTEMPT))
                continue

            loop = asyncio.get_running_loop()
            calibrated = await loop.run_in_executor(
                ctx.executor, self.calibrator.calibrate, strategy.name, issue.category.value, proposal.confidence
            )
            floor = self.config.floor_for(strategy.name)
            if calibrated < floor:
                log.info(
                    "proposal_below_floor",
                    strategy=strategy.name,
                    raw=round(proposal.confidence, 3),
                    calibrated=round(calibrated, 3),
                    floor=floor,
                )
                recorded.append(
                    await self._record(issue, ctx, strategy.name, AttemptOutcome.BELOW_FLOOR, proposal, calibrated)
                )
                continue

            log.info("proposal_accepted", strategy=strategy.name, calibrated=round(calibrated, 3))
            return await self._record(issue, ctx, strategy.name, AttemptOutcome.PROPOSED, proposal, calibrated)

        log.info("strategy_chain_exhausted", attempts=len(recorded))
        return Exhausted(issue_id=issue.id, attempts=recorded)

    async def _record(
        self,
        issue: Issue,
        ctx: StrategyContext,
        strategy: str,
        outcome: AttemptOutcome,
        proposal: Optional[Proposal] = None,
        calibrated: float = 0.0,
        error: Optional[str] = None,
    ) -> FixAttempt:
        attempt = FixAttempt(
            issue_id=issue.id,
            strategy=strategy,
            raw_confidence=proposal.confidence if proposal else 0.0,
            calibrated_confidence=calibrated,
            patch=proposal.patch if proposal else None,
            outcome=outcome,
            error=error,
        )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(ctx.executor, partial(self.issues.add_attempt, attempt))
