"""
Text Completion Service

Given a system prompt and a user prompt, return the model's text.

Supported providers:
- "anthropic" (Messages API through the official SDK)
- "openai" / "openai-compatible" (chat completions over HTTP, e.g. Qwen)
- "gemini" (generateContent over HTTP)
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from anthropic import APIConnectionError, APIStatusError, APITimeoutError, AsyncAnthropic

from paperdeck.config import Settings
from paperdeck.errors import UpstreamServiceError

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
PROVIDERS = ("openai", "openai-compatible", "anthropic", "gemini")


@dataclass
class LlmConfig:
    """Resolved provider, credentials and model for one completion call."""
    provider: str
    api_key: str
    model: str


def normalize_provider(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip().lower().replace("_", "-").replace(" ", "-")
    if normalized == "openai":
        return "openai"
    if normalized in ("openai-compatible", "openai-compatible-api"):
        return "openai-compatible"
    if normalized in ("anthropic", "claude"):
        return "anthropic"
    if normalized in ("gemini", "google"):
        return "gemini"
    return None


def guess_provider_from_model(model: Optional[str]) -> Optional[str]:
    if not model:
        return None
    lower = model.lower()
    if "claude" in lower:
        return "anthropic"
    if "gemini" in lower:
        return "gemini"
    if "gpt" in lower or "openai" in lower:
        return "openai"
    return "openai-compatible"


def resolve_api_key(settings: Settings, provider: str) -> Optional[str]:
    if settings.LLM_API_KEY.strip():
        return settings.LLM_API_KEY.strip()
    if provider == "openai":
        return settings.OPENAI_API_KEY.strip() or None
    if provider == "anthropic":
        return settings.ANTHROPIC_API_KEY.strip() or None
    if provider == "gemini":
        return settings.GEMINI_API_KEY.strip() or None
    if provider == "openai-compatible":
        return settings.QWEN_API_KEY.strip() or settings.OPENAI_API_KEY.strip() or None
    return None


def resolve_llm_config(settings: Settings, model: Optional[str]) -> Optional[LlmConfig]:
    """
    Pick the provider for a call.

    Order: explicit LLM_PROVIDER, then a guess from the model name when a
    shared LLM_API_KEY is set, then the first provider that has a key.
    """
    model = (model or "").strip() or None
    provider = normalize_provider(settings.LLM_PROVIDER)
    if not provider and settings.LLM_API_KEY.strip():
        provider = guess_provider_from_model(model)
    if not provider:
        if settings.OPENAI_API_KEY.strip():
            provider = "openai"
        elif settings.ANTHROPIC_API_KEY.strip():
            provider = "anthropic"
        elif settings.GEMINI_API_KEY.strip():
            provider = "gemini"
        elif settings.QWEN_API_KEY.strip():
            provider = "openai-compatible"
        else:
            provider = guess_provider_from_model(model)
    if not provider:
        return None

    api_key = resolve_api_key(settings, provider)
    if not api_key:
        return None

    return LlmConfig(
        provider=provider,
        api_key=api_key,
        model=model or settings.LLM_MODEL.strip()
    )


class CompletionService:
    """Text-completion client; one instance is shared by all jobs."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.timeout = settings.LLM_TIMEOUT_SECONDS

    async def complete(self, system_prompt: str, user_prompt: str, model: Optional[str] = None) -> str:
        llm = resolve_llm_config(self.settings, model)
        if llm is None:
            raise UpstreamServiceError("LLM provider is not configured (missing API key).")
        if not llm.model:
            raise UpstreamServiceError("LLM model is required but was not provided.")

        logger.info(f"Requesting completion from {llm.provider} ({llm.model}), prompt {len(user_prompt)} chars")

        if llm.provider == "anthropic":
            text = await self._call_anthropic(llm, system_prompt, user_prompt)
        elif llm.provider == "gemini":
            text = await self._call_gemini(llm, system_prompt, user_prompt)
        else:
            text = await self._call_openai_compatible(llm, system_prompt, user_prompt)

        logger.info(f"Received completion ({len(text)} chars)")
        return text

    async def _call_anthropic(self, llm: LlmConfig, system_prompt: str, user_prompt: str) -> str:
        client = AsyncAnthropic(
            api_key=llm.api_key,
            base_url=self.settings.ANTHROPIC_BASE_URL.strip() or None,
            timeout=self.timeout,
            max_retries=0
        )
        endpoint = "/v1/messages"
        try:
            response = await client.messages.create(
                model=llm.model,
                max_tokens=self.settings.LLM_MAX_TOKENS,
                temperature=self.settings.LLM_TEMPERATURE,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}]
            )
        except APITimeoutError:
            raise UpstreamServiceError(f"LLM request timed out after {self.timeout:.0f}s", endpoint=endpoint)
        except APIStatusError as e:
            raise UpstreamServiceError("LLM request failed:", endpoint=endpoint, status_code=e.status_code)
        except APIConnectionError:
            raise UpstreamServiceError("LLM request could not connect", endpoint=endpoint)
        finally:
            await client.close()

        if response.stop_reason == "max_tokens":
            logger.warning("Completion truncated at max_tokens")

        blocks = [block.text for block in response.content if getattr(block, "type", None) == "text"]
        if not blocks:
            raise UpstreamServiceError("LLM response missing content.", endpoint=endpoint)
        return "".join(blocks)

    async def _post_json(self, url: str, headers: dict, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException:
            raise UpstreamServiceError(f"LLM request timed out after {self.timeout:.0f}s", endpoint=url)
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"LLM request could not connect ({type(e).__name__})", endpoint=url)

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(f"LLM API error: {response.status_code} - {response.text[:300]}")
            raise UpstreamServiceError("LLM request failed:", endpoint=url, status_code=response.status_code)

        try:
            return response.json()
        except ValueError:
            raise UpstreamServiceError("LLM response was not valid JSON", endpoint=url)

    async def _call_openai_compatible(self, llm: LlmConfig, system_prompt: str, user_prompt: str) -> str:
        base_url = self.settings.LLM_BASE_URL.strip() or DEFAULT_OPENAI_BASE_URL
        url = f"{base_url.rstrip('/')}/chat/completions"
        data = await self._post_json(
            url,
            headers={
                "Authorization": f"Bearer {llm.api_key}",
                "Content-Type": "application/json"
            },
            payload={
                "model": llm.model,
                "temperature": self.settings.LLM_TEMPERATURE,
                "max_tokens": self.settings.LLM_MAX_TOKENS,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt}
                ]
            }
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str):
            raise UpstreamServiceError("LLM response missing content.", endpoint=url)
        return content

    async def _call_gemini(self, llm: LlmConfig, system_prompt: str, user_prompt: str) -> str:
        base_url = self.settings.GEMINI_BASE_URL.strip().rstrip("/")
        url = f"{base_url}/models/{llm.model}:generateContent"
        data = await self._post_json(
            url,
            headers={
                "x-goog-api-key": llm.api_key,
                "Content-Type": "application/json"
            },
            payload={
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
                "generationConfig": {
                    "temperature": self.settings.LLM_TEMPERATURE,
                    "maxOutputTokens": self.settings.LLM_MAX_TOKENS
                }
            }
        )
        try:
            content = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str):
            raise UpstreamServiceError("LLM response missing content.", endpoint=url)
        return content
