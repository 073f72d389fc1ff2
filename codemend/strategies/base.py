from __future__ import annotations

import asyncio
from abc import ABC
from concurrent.futures import Executor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from codemend.config.defaults import CodemendConfig
from codemend.models import CandidatePatch, Issue
from codemend.utils.file_utils import read_text
from codemend.workers import WorkerSlot


class Proposal(BaseModel):
    """A candidate patch and the confidence its strategy reports for it."""

    patch: CandidatePatch
    confidence: float = Field(..., ge=0.0, le=1.0)
    notes: str = ""


@dataclass
class StrategyContext:
    """Everything a strategy may look at for one issue. ``content`` is the file as it is right now."""

    root: Path
    project: str
    rel_path: str
    content: str
    config: CodemendConfig = field(default_factory=CodemendConfig)
    slot: Optional[WorkerSlot] = None
    executor: Optional[Executor] = None
    # Commits an attempt through the engine's locked apply path; set for escalation.
    apply: Optional[Callable[..., Awaitable[Any]]] = None

    @property
    def path(self) -> Path:
        return self.root / self.rel_path

    def reload(self) -> str:
        self.content = read_text(self.path)
        return self.content


class BaseStrategy(ABC):
    """
    One way of producing a fix. Subclasses implement either the synchronous
    ``propose`` (run on an executor thread) or override ``attempt``.
    Returning None means "no attempt".
    """

    name: str = "base"

    async def attempt(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(ctx.executor, self.propose, issue, ctx)

    def propose(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        raise NotImplementedError(f"{type(self).__name__} implements neither propose() nor attempt()")
