from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class LLMRequest(BaseModel):
    prompt: str
    system_prompt: Optional[str] = None
    context: Optional[str] = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LLMResponse(BaseModel):
    content: str
    usage: Dict[str, int] = Field(default_factory=dict)
    raw_output: Optional[str] = None


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients.

    Implementations raise ``TransientServiceError`` for timeouts and rate limits
    and ``ExternalServiceFailure`` for everything else the provider rejects.
    """

    @abstractmethod
    def generate(self, request: LLMRequest) -> LLMResponse:
        """Generates a response from the LLM."""
        pass


class DummyLLMClient(BaseLLMClient):
    """Offline client: hands the code it was given straight back, so no fix is ever proposed."""

    def generate(self, request: LLMRequest) -> LLMResponse:
        language = request.metadata.get("language", "")
        code = request.metadata.get("window", "")
        return LLMResponse(
            content=f"```{language}\n{code}\n```\nConfidence: 0.0",
            usage={"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
            raw_output="Dummy output",
        )
