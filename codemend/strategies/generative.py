from __future__ import annotations

import asyncio
from contextlib import nullcontext
from typing import Optional

import backoff
import structlog

from codemend.config.remediation import RetryConfig, StrategyConfig
from codemend.errors import TransientServiceError
from codemend.llm.generative import GeneratedPatch, GenerationContext, GenerativeService
from codemend.models import CandidatePatch, Issue
from codemend.remediation.patch import build_file_patch, detect_newline, locate_snippet, replace_span
from codemend.strategies.base import BaseStrategy, Proposal, StrategyContext
from codemend.utils.file_utils import detect_language

logger = structlog.get_logger()


class GenerativeStrategy(BaseStrategy):
    """
    Asks the generative service to rewrite the code around the issue.

    The worker's pool slot is handed back for the duration of the call; the
    call itself is bounded by a timeout and retried with exponential backoff
    while the service reports transient failures.
    """

    name = "generative"

    def __init__(
        self,
        service: GenerativeService,
        config: Optional[StrategyConfig] = None,
        retry: Optional[RetryConfig] = None,
        context_lines: int = 40,
    ):
        self.service = service
        self.config = config or StrategyConfig()
        self.retry = retry or RetryConfig()
        self.context_lines = context_lines

    async def attempt(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        lines = ctx.content.splitlines(keepends=True)
        if not lines:
            return None
        span = locate_snippet(ctx.content, issue.line, issue.snippet) or (issue.line, issue.end_line or issue.line)
        half = self.context_lines // 2
        start = max(1, span[0] - half)
        end = min(len(lines), span[1] + half)
        window = "".join(lines[start - 1:end])
        context = GenerationContext(
            file_path=ctx.rel_path,
            language=detect_language(ctx.path),
            window=window,
            start_line=start,
            end_line=end,
        )

        async with ctx.slot.released() if ctx.slot else nullcontext():
            generated = await self._generate(issue, context)

        code = generated.code
        if code and not code.endswith(("\n", "\r")):
            code += detect_newline(ctx.content)
        new_content = replace_span(ctx.content, start, end, code)
        if new_content == ctx.content:
            return None
        candidate = CandidatePatch(
            files=[build_file_patch(ctx.rel_path, ctx.content, new_content)],
            after=code,
            description=f"Generated fix for {issue.rule_id}",
        )
        confidence = generated.confidence
        if confidence is None:
            confidence = self.config.generative_default_confidence
        return Proposal(patch=candidate, confidence=confidence, notes=generated.explanation[:500])

    async def _generate(self, issue: Issue, context: GenerationContext) -> GeneratedPatch:
        @backoff.on_exception(
            backoff.expo,
            TransientServiceError,
            max_tries=self.retry.max_tries,
            max_time=self.retry.max_time,
            base=self.retry.base,
            factor=self.retry.factor,
            on_backoff=lambda details: logger.info(
                "generative_retry", issue_id=issue.id, tries=details["tries"], wait=round(details["wait"], 2)
            ),
        )
        async def call() -> GeneratedPatch:
            try:
                return await asyncio.wait_for(self.service.generate(issue, context), timeout=self.config.generative_timeout)
            except asyncio.TimeoutError:
                raise TransientServiceError(f"Generative service timed out after {self.config.generative_timeout}s")

        return await call()
