from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from codemend.models import Issue
from codemend.strategies.base import Proposal, StrategyContext


class EscalationHandler(ABC):
    """A heavier, domain-specific fixer tried only after the strategy chain gave up."""

    name: str = "base"

    @abstractmethod
    def can_handle(self, issue: Issue) -> bool:
        pass

    @abstractmethod
    def propose(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        """Builds a candidate from ``ctx.content``; None when this handler has nothing to offer."""
        pass
