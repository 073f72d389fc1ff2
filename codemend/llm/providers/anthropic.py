from __future__ import annotations

from anthropic import Anthropic, APIConnectionError, APIError, APIStatusError, APITimeoutError, RateLimitError

from codemend.config.llm import LLMConfig
from codemend.errors import ExternalServiceFailure, TransientServiceError
from codemend.llm.client import BaseLLMClient, LLMRequest, LLMResponse

RETRYABLE_STATUS = (429, 500, 502, 503, 504, 529)


class AnthropicClient(BaseLLMClient):
    def __init__(self, config: LLMConfig):
        self.config = config
        self.client = Anthropic(api_key=config.api_key, timeout=config.timeout, max_retries=0)

    def generate(self, request: LLMRequest) -> LLMResponse:
        system = request.system_prompt or self.config.system_prompt

        content = request.prompt
        if request.context:
            content += f"\n\nContext:\n{request.context}"

        messages = [{"role": "user", "content": content}]

        kwargs = {
            "model": request.model or self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

        if system:
            kwargs["system"] = system

        try:
            response = self.client.messages.create(**kwargs)
        except (RateLimitError, APITimeoutError, APIConnectionError) as e:
            raise TransientServiceError(f"Anthropic unavailable: {e}") from e
        except APIStatusError as e:
            if e.status_code in RETRYABLE_STATUS:
                raise TransientServiceError(f"Anthropic returned {e.status_code}") from e
            raise ExternalServiceFailure(f"Anthropic rejected the request: {e.status_code}") from e
        except APIError as e:
            raise ExternalServiceFailure(f"Anthropic error: {e}") from e

        content_text = ""
        for block in response.content:
            if block.type == "text":
                content_text += block.text

        usage_dict = {
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
        }

        return LLMResponse(
            content=content_text,
            usage=usage_dict,
            raw_output=str(response),
        )
