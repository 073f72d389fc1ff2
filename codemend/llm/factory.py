from __future__ import annotations

import os
from concurrent.futures import Executor
from typing import Optional

import structlog

from codemend.config.llm import LLMConfig
from codemend.llm.client import BaseLLMClient, DummyLLMClient
from codemend.llm.generative import GenerativeService, LLMGenerativeService
from codemend.llm.providers.anthropic import AnthropicClient
from codemend.llm.providers.openai import OpenAIClient

logger = structlog.get_logger()

PROVIDERS = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
}
API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


class LLMFactory:
    @staticmethod
    def create_client(config: LLMConfig) -> BaseLLMClient:
        """Builds the provider client; ``dummy``, or a real provider with no API key, stays offline."""
        if config.provider == "dummy":
            return DummyLLMClient()
        if config.provider not in PROVIDERS:
            raise ValueError(f"Unsupported LLM provider: {config.provider}")
        if not (config.api_key or os.environ.get(API_KEY_ENV[config.provider])):
            logger.warning("llm_offline", provider=config.provider, reason="no api key configured")
            return DummyLLMClient()
        return PROVIDERS[config.provider](config)

    @staticmethod
    def create_service(
        config: LLMConfig,
        executor: Optional[Executor] = None,
        call_timeout: Optional[float] = None,
    ) -> Optional[GenerativeService]:
        """
        The generative service for the chain, or None when the generative
        strategy is switched off.

        ``call_timeout`` is the caller's own deadline per call; the SDK timeout
        is capped to it so a call abandoned by the caller also ends upstream.
        """
        if not config.enabled:
            return None
        if call_timeout is not None and call_timeout < config.timeout:
            config = config.model_copy(update={"timeout": call_timeout})
        return LLMGenerativeService(LLMFactory.create_client(config), config, executor)
