import pytest

from paperdeck.errors import UpstreamServiceError, redact_url
from paperdeck.services.llm_service import (
    CompletionService,
    guess_provider_from_model,
    normalize_provider,
    resolve_llm_config,
)


@pytest.mark.parametrize("value, provider", [
    ("OpenAI", "openai"),
    ("openai_compatible", "openai-compatible"),
    ("Claude", "anthropic"),
    ("google", "gemini"),
    ("mistral", None),
    (None, None),
])
def test_normalize_provider(value, provider):
    assert normalize_provider(value) == provider


def test_guess_provider_from_model():
    assert guess_provider_from_model("claude-sonnet-4-5") == "anthropic"
    assert guess_provider_from_model("gemini-2.5-pro") == "gemini"
    assert guess_provider_from_model("gpt-4o") == "openai"
    assert guess_provider_from_model("qwen-max") == "openai-compatible"
    assert guess_provider_from_model("") is None


def test_shared_key_uses_model_name(settings):
    settings.LLM_API_KEY = "shared"
    config = resolve_llm_config(settings, "qwen-max")
    assert (config.provider, config.api_key, config.model) == ("openai-compatible", "shared", "qwen-max")


def test_explicit_provider_wins(settings):
    settings.LLM_PROVIDER = "anthropic"
    settings.ANTHROPIC_API_KEY = "ak"
    settings.OPENAI_API_KEY = "ok"
    config = resolve_llm_config(settings, "gpt-4o")
    assert (config.provider, config.api_key) == ("anthropic", "ak")


def test_first_configured_provider_and_default_model(settings):
    settings.GEMINI_API_KEY = "gk"
    settings.LLM_MODEL = "gemini-2.5-flash"
    config = resolve_llm_config(settings, "  ")
    assert (config.provider, config.model) == ("gemini", "gemini-2.5-flash")


def test_no_key_means_no_config(settings):
    assert resolve_llm_config(settings, "qwen-max") is None


async def test_complete_without_credentials_fails(settings):
    with pytest.raises(UpstreamServiceError, match="not configured"):
        await CompletionService(settings).complete("system", "user", model="qwen-max")


def test_redact_url_drops_host_and_query():
    assert redact_url("https://dashscope.example.com/api/v1/generation?key=secret") == "/api/v1/generation"
    assert redact_url("https://example.com") == "/"
    error = UpstreamServiceError("TTS request failed:", endpoint="https://h.example/v1/tts?token=abc", status_code=502)
    assert str(error) == "TTS request failed: 502 (/v1/tts)"
