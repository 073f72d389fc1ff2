import pytest
from unittest.mock import MagicMock, patch

from anthropic import RateLimitError as AnthropicRateLimitError
from openai import BadRequestError, RateLimitError

from codemend.config.llm import LLMConfig
from codemend.errors import ExternalServiceFailure, TransientServiceError
from codemend.llm.client import DummyLLMClient, LLMRequest
from codemend.llm.factory import LLMFactory
from codemend.llm.generative import LLMGenerativeService
from codemend.llm.providers.anthropic import AnthropicClient
from codemend.llm.providers.openai import OpenAIClient


@pytest.fixture
def llm_config():
    return LLMConfig(
        provider="openai",
        api_key="test-key",
        model="gpt-4",
        temperature=0.1
    )


def _error_response(status):
    response = MagicMock()
    response.status_code = status
    response.headers = {"retry-after": "0.01"}
    return response


class TestOpenAIClient:
    def test_openai_client_success(self, llm_config):
        with patch("codemend.llm.providers.openai.OpenAI") as mock_openai:
            mock_instance = mock_openai.return_value
            mock_response = MagicMock()
            mock_choice = MagicMock()
            mock_choice.message.content = "Fixed code"
            mock_response.choices = [mock_choice]
            mock_response.usage.prompt_tokens = 10
            mock_response.usage.completion_tokens = 5
            mock_response.usage.total_tokens = 15
            mock_instance.chat.completions.create.return_value = mock_response

            client = OpenAIClient(llm_config)
            response = client.generate(LLMRequest(prompt="Fix this", system_prompt="Be brief"))

            assert response.content == "Fixed code"
            assert response.usage["total_tokens"] == 15
            kwargs = mock_instance.chat.completions.create.call_args.kwargs
            assert kwargs["model"] == "gpt-4"
            assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}

    def test_client_gets_the_timeout_and_no_sdk_retries(self, llm_config):
        llm_config.timeout = 12.5
        with patch("codemend.llm.providers.openai.OpenAI") as mock_openai:
            OpenAIClient(llm_config)
        mock_openai.assert_called_once_with(api_key="test-key", timeout=12.5, max_retries=0)

    def test_openai_rate_limit_surfaces_as_transient_after_one_call(self, llm_config):
        with patch("codemend.llm.providers.openai.OpenAI") as mock_openai:
            create = mock_openai.return_value.chat.completions.create
            create.side_effect = RateLimitError(message="Rate limit", response=_error_response(429), body=None)
            with pytest.raises(TransientServiceError):
                OpenAIClient(llm_config).generate(LLMRequest(prompt="Fix this"))
            assert create.call_count == 1

    def test_openai_rejection_is_not_retried(self, llm_config):
        with patch("codemend.llm.providers.openai.OpenAI") as mock_openai:
            create = mock_openai.return_value.chat.completions.create
            create.side_effect = BadRequestError(message="bad", response=_error_response(400), body=None)

            with pytest.raises(ExternalServiceFailure) as exc:
                OpenAIClient(llm_config).generate(LLMRequest(prompt="Fix this"))

            assert not isinstance(exc.value, TransientServiceError)
            assert create.call_count == 1


class TestAnthropicClient:
    def test_anthropic_client_success(self, llm_config):
        llm_config.provider = "anthropic"
        with patch("codemend.llm.providers.anthropic.Anthropic") as mock_anthropic:
            mock_instance = mock_anthropic.return_value
            mock_response = MagicMock()
            mock_block = MagicMock()
            mock_block.type = "text"
            mock_block.text = "Claude Fix"
            mock_response.content = [mock_block]
            mock_response.usage.input_tokens = 10
            mock_response.usage.output_tokens = 5

            mock_instance.messages.create.return_value = mock_response

            client = AnthropicClient(llm_config)
            response = client.generate(LLMRequest(prompt="Fix this", system_prompt="Be brief"))

            assert response.content == "Claude Fix"
            assert response.usage["completion_tokens"] == 5
            assert mock_instance.messages.create.call_args.kwargs["system"] == "Be brief"

    def test_anthropic_rate_limit_surfaces_as_transient_after_one_call(self, llm_config):
        with patch("codemend.llm.providers.anthropic.Anthropic") as mock_anthropic:
            create = mock_anthropic.return_value.messages.create
            create.side_effect = AnthropicRateLimitError(message="Rate limit", response=_error_response(429), body=None)
            with pytest.raises(TransientServiceError):
                AnthropicClient(llm_config).generate(LLMRequest(prompt="Fix this"))
            assert create.call_count == 1


class TestFactory:
    def test_dummy_provider(self):
        assert isinstance(LLMFactory.create_client(LLMConfig()), DummyLLMClient)

    def test_openai_provider(self, llm_config):
        with patch("codemend.llm.providers.openai.OpenAI"):
            assert isinstance(LLMFactory.create_client(llm_config), OpenAIClient)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMFactory.create_client(LLMConfig(provider="nope"))

    def test_provider_without_api_key_stays_offline(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with patch("codemend.llm.providers.anthropic.Anthropic") as mock_anthropic:
            client = LLMFactory.create_client(LLMConfig(provider="anthropic"))
        assert isinstance(client, DummyLLMClient)
        mock_anthropic.assert_not_called()

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        with patch("codemend.llm.providers.openai.OpenAI"):
            assert isinstance(LLMFactory.create_client(LLMConfig(provider="openai")), OpenAIClient)

    def test_disabled_generation_builds_no_service(self, llm_config):
        llm_config.enabled = False
        assert LLMFactory.create_service(llm_config) is None

    def test_service_caps_the_sdk_timeout_to_the_call_deadline(self, llm_config):
        llm_config.timeout = 60.0
        with patch("codemend.llm.providers.openai.OpenAI") as mock_openai:
            service = LLMFactory.create_service(llm_config, call_timeout=20.0)

        assert isinstance(service, LLMGenerativeService)
        assert isinstance(service.client, OpenAIClient)
        assert mock_openai.call_args.kwargs["timeout"] == 20.0
        assert llm_config.timeout == 60.0

    def test_shorter_sdk_timeout_is_kept(self, llm_config):
        llm_config.timeout = 5.0
        with patch("codemend.llm.providers.openai.OpenAI") as mock_openai:
            LLMFactory.create_service(llm_config, call_timeout=20.0)
        assert mock_openai.call_args.kwargs["timeout"] == 5.0
