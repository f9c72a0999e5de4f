import pytest

from knowledge_companion.config import Config
from knowledge_companion.llm import ChatCompletionProvider, create_provider, create_provider_from_config


def test_create_provider_uses_minimax_defaults():
    provider = create_provider(provider="minimax")

    assert isinstance(provider, ChatCompletionProvider)
    assert provider.model == "MiniMax-M2"
    assert provider.base_url == "https://api.minimax.io/v1"


def test_create_provider_supports_grok_with_custom_model():
    provider = create_provider(provider="Grok", model="grok-4", api_key="xai-key")

    assert provider.model == "grok-4"
    assert provider.base_url == "https://api.x.ai/v1"
    assert provider.api_key == "xai-key"


def test_create_provider_strips_trailing_slash_from_base_url():
    provider = create_provider(provider="openai", base_url="http://localhost:8080/v1/")

    assert provider.base_url == "http://localhost:8080/v1"


def test_create_provider_rejects_unsupported_provider():
    with pytest.raises(ValueError, match="not supported"):
        create_provider(provider="carrier-pigeon")


def test_create_provider_from_config_copies_model_settings():
    cfg = Config()
    cfg.model.provider = "openai"
    cfg.model.model = "gpt-4o"
    cfg.model.temperature = 0.2
    cfg.model.max_tokens = 1024

    provider = create_provider_from_config(cfg)

    assert provider.model == "gpt-4o"
    assert provider.temperature == 0.2
    assert provider.max_tokens == 1024
    assert provider.stream_max_tokens == 32768
