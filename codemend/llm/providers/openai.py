from __future__ import annotations

from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError, OpenAI, RateLimitError

from codemend.config.llm import LLMConfig
from codemend.errors import ExternalServiceFailure, TransientServiceError
from codemend.llm.client import BaseLLMClient, LLMRequest, LLMResponse

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class OpenAIClient(BaseLLMClient):
    def __init__(self, config: LLMConfig):
        self.config = config
        self.client = OpenAI(api_key=config.api_key, timeout=config.timeout, max_retries=0)

    def generate(self, request: LLMRequest) -> LLMResponse:
        messages = []
        if request.system_prompt or self.config.system_prompt:
            messages.append(
                {"role": "system", "content": request.system_prompt or self.config.system_prompt}
            )

        content = request.prompt
        if request.context:
            content += f"\n\nContext:\n{request.context}"

        messages.append({"role": "user", "content": content})

        try:
            response = self.client.chat.completions.create(
                model=request.model or self.config.model,
                messages=messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except (RateLimitError, APITimeoutError, APIConnectionError) as e:
            raise TransientServiceError(f"OpenAI unavailable: {e}") from e
        except APIStatusError as e:
            if e.status_code in RETRYABLE_STATUS:
                raise TransientServiceError(f"OpenAI returned {e.status_code}") from e
            raise ExternalServiceFailure(f"OpenAI rejected the request: {e.status_code}") from e
        except APIError as e:
            raise ExternalServiceFailure(f"OpenAI error: {e}") from e

        choice = response.choices[0]
        usage = response.usage

        usage_dict = {}
        if usage:
            usage_dict = {
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
            }

        return LLMResponse(
            content=choice.message.content or "",
            usage=usage_dict,
            raw_output=str(response),
        )
