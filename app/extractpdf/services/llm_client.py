"""
Language model client.

The pipeline talks to the model through the ``LanguageModel`` protocol. The
production implementation targets OpenRouter's OpenAI-compatible endpoint
with the official ``openai`` SDK. Transport and HTTP failures are returned
as unsuccessful completions carrying the HTTP status when one is known,
never raised, so a failing page cannot abort its siblings.
"""

import logging
from typing import Any, Protocol

from pydantic import BaseModel

from ..models import TokenUsageSummary

logger = logging.getLogger(__name__)

DEFAULT_OPENROUTER_MODEL = "google/gemini-2.5-flash"
DEFAULT_TEMPERATURE = 0.2

# Status reported when the provider could not be reached at all
CONNECTION_ERROR_STATUS = 503
TIMEOUT_STATUS = 408


class LlmCompletion(BaseModel):
    """Outcome of one chat completion call."""

    success: bool
    output: str | None = None
    error: str | None = None
    status_code: int | None = None
    usage: TokenUsageSummary | None = None


class LanguageModel(Protocol):
    """Chat-completion capability consumed by the page prompt executor."""

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LlmCompletion:
        ...


def extract_message_content(message: Any) -> str:
    """Flatten a chat message's content (string or list of parts) to text."""
    content = getattr(message, "content", None)
    if not content:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for segment in content:
            if isinstance(segment, str):
                parts.append(segment)
            elif isinstance(segment, dict) and isinstance(segment.get("text"), str):
                parts.append(segment["text"])
            elif isinstance(getattr(segment, "text", None), str):
                parts.append(segment.text)
        return "\n".join(part for part in parts if part)
    return ""


def usage_from_response(usage: Any) -> TokenUsageSummary | None:
    """Read token counters (and OpenRouter's ``cost``) from a response usage block."""
    if usage is None:
        return None
    cost = getattr(usage, "cost", None)
    if cost is None and getattr(usage, "model_extra", None):
        cost = usage.model_extra.get("cost")
    return TokenUsageSummary(
        prompt_tokens=getattr(usage, "prompt_tokens", None),
        completion_tokens=getattr(usage, "completion_tokens", None),
        total_tokens=getattr(usage, "total_tokens", None),
        total_cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
    )


class OpenRouterClient:
    """
    OpenRouter chat-completions client.

    SDK-level retries are disabled; retrying is owned by the processing
    queue so that every attempt is visible in the run's event log.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str = "https://openrouter.ai/api/v1",
        default_model: str | None = None,
        site_url: str | None = None,
        app_name: str | None = None,
        timeout: float = 120.0,
    ):
        """
        Initialize the client.

        Args:
            api_key: OpenRouter API key. Calls fail softly when missing.
            api_url: Base URL of the OpenAI-compatible API.
            default_model: Model used when a call does not name one.
            site_url: Sent as ``HTTP-Referer`` for OpenRouter attribution.
            app_name: Sent as ``X-Title`` for OpenRouter attribution.
            timeout: Per-call deadline in seconds.
        """
        self.api_key = api_key
        self.api_url = api_url
        self.default_model = default_model or DEFAULT_OPENROUTER_MODEL
        self.timeout = timeout
        self.headers = {
            key: value.strip()
            for key, value in {"HTTP-Referer": site_url, "X-Title": app_name}.items()
            if value and value.strip()
        }
        self._client = None

        if not self.api_key:
            logger.warning(
                "OpenRouter API key is not configured. Set OPENROUTER_API_KEY in .env to run prompts."
            )

    @property
    def client(self):
        """Lazy-load the async OpenAI client."""
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.api_url,
                timeout=self.timeout,
                max_retries=0,
                default_headers=self.headers or None,
            )
        return self._client

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LlmCompletion:
        if not self.api_key:
            return LlmCompletion(
                success=False,
                error=(
                    "Missing OpenRouter API key. Set OPENROUTER_API_KEY in the environment "
                    "before running prompts."
                ),
            )

        from openai import APIConnectionError, APIStatusError, APITimeoutError

        request: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": messages,
            "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**request)
        except APITimeoutError:
            logger.warning("OpenRouter request timed out after %.0fs", self.timeout)
            return LlmCompletion(
                success=False,
                error=f"OpenRouter request timed out after {self.timeout:.0f} seconds",
                status_code=TIMEOUT_STATUS,
            )
        except APIStatusError as e:
            logger.warning("OpenRouter request failed with status %d", e.status_code)
            return LlmCompletion(
                success=False,
                error=e.message or f"OpenRouter request failed with status {e.status_code}",
                status_code=e.status_code,
            )
        except APIConnectionError as e:
            logger.warning("Could not reach OpenRouter: %s", e)
            return LlmCompletion(
                success=False,
                error=str(e) or "Failed to reach OpenRouter API",
                status_code=CONNECTION_ERROR_STATUS,
            )

        choices = getattr(response, "choices", None) or []
        if not choices:
            return LlmCompletion(success=False, error="OpenRouter response did not include any choices")

        output = extract_message_content(choices[0].message)
        if not output:
            return LlmCompletion(
                success=False,
                error="OpenRouter response did not include any message content",
            )

        return LlmCompletion(
            success=True,
            output=output,
            usage=usage_from_response(getattr(response, "usage", None)),
        )


# =============================================================================
# Singleton Factory
# =============================================================================

_llm_client: OpenRouterClient | None = None


def get_llm_client() -> OpenRouterClient:
    """Get or create the OpenRouter client singleton."""
    global _llm_client
    if _llm_client is None:
        from ..config import get_settings

        settings = get_settings()
        _llm_client = OpenRouterClient(
            api_key=settings.openrouter_api_key,
            api_url=settings.openrouter_api_url,
            default_model=settings.openrouter_model,
            site_url=settings.openrouter_site_url,
            app_name=settings.openrouter_app_name,
            timeout=settings.llm_request_timeout_seconds,
        )
    return _llm_client
