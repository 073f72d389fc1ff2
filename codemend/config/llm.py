from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class LLMConfig(BaseModel):
    enabled: bool = Field(True, description="Enable or disable the generative fix strategy.")
    provider: str = Field("dummy", description="The LLM provider to use.")
    model: str = Field("dummy-model", description="The LLM model to use.")
    api_key: Optional[str] = Field(None, description="The API key for the LLM provider.")
    temperature: float = Field(0.0, description="The temperature for LLM generation.")
    timeout: float = Field(60.0, description="Timeout in seconds for one API call. Retries are left to the caller.")
    system_prompt: Optional[str] = Field(None, description="Custom system prompt.")
    max_tokens: int = Field(4096, description="Maximum tokens requested per completion.")
    max_code_context_lines: int = Field(40, description="Lines of surrounding code sent with each issue.")

    @classmethod
    def default(cls) -> "LLMConfig":
        return cls()
