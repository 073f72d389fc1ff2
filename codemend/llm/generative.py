"""The generative service behind the last strategy of the chain."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from typing import Optional

import structlog
from pydantic import BaseModel

from codemend.config.llm import LLMConfig
from codemend.errors import ExternalServiceFailure
from codemend.llm.client import BaseLLMClient, LLMRequest
from codemend.llm.prompts import SYSTEM_PROMPT, build_fix_prompt, parse_confidence
from codemend.models import Issue
from codemend.remediation.patch import extract_code_block

logger = structlog.get_logger()


class GenerationContext(BaseModel):
    file_path: str
    language: str
    window: str
    start_line: int
    end_line: int


class GeneratedPatch(BaseModel):
    code: str
    confidence: Optional[float] = None
    explanation: str = ""


class GenerativeService(ABC):
    @abstractmethod
    async def generate(self, issue: Issue, context: GenerationContext) -> GeneratedPatch:
        """Returns replacement code for ``context.window`` or raises ExternalServiceFailure."""
        pass


class LLMGenerativeService(GenerativeService):
    def __init__(self, client: BaseLLMClient, config: Optional[LLMConfig] = None, executor: Optional[Executor] = None):
        self.client = client
        self.config = config or LLMConfig()
        self.executor = executor

    async def generate(self, issue: Issue, context: GenerationContext) -> GeneratedPatch:
        request = LLMRequest(
            prompt=build_fix_prompt(issue, context),
            system_prompt=self.config.system_prompt or SYSTEM_PROMPT,
            metadata={"issue_id": issue.id, "language": context.language, "window": context.window},
        )
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(self.executor, self.client.generate, request)

        code = extract_code_block(response.content, context.language)
        if code is None:
            raise ExternalServiceFailure("Response did not contain a code block")
        logger.debug("generative_response", issue_id=issue.id, usage=response.usage)
        return GeneratedPatch(code=code, confidence=parse_confidence(response.content), explanation=response.content)
