"""LLM client: HTTP connection to a chat-completion backend.

The engines take an LLM callable matching the protocol:

    async def __call__(self, stage: str, messages: list[ChatMessage]) -> str: ...

`stage` identifies which operation is calling (e.g. "initial_story",
"choices"). The implementation uses it for logging only.

HttpLLM is the real client, built from a ModelConfig. The request body is a
tagged union over provider kind: one builder per wire format, each producing
its own request type.

    OpenAIChatRequest        POST {base}/chat/completions   bearer auth
                             Response: {"choices": [{"message": {"content": ...}}]}
    AnthropicMessagesRequest POST {base}/messages           x-api-key auth
                             Response: {"content": [{"type": "text", "text": ...}]}

Tests use StubLLM (defined in conftest) instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any, Literal, Protocol, TypedDict, Union

import httpx
from pydantic import BaseModel, Field

from storyloom.models import ModelConfig

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai",
    "openrouter": "https://openrouter.ai/api/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "moonshot": "https://api.moonshot.cn/v1",
    "zhipu": "https://open.bigmodel.cn/api/paas/v4",
}

ANTHROPIC_VERSION = "2023-06-01"


class ChatMessage(TypedDict):
    role: str
    content: str


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, messages: list[ChatMessage]) -> str: ...


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""


class MissingCredentialsError(LLMError):
    """Raised when a model call is attempted without an api key."""


# ---------------------------------------------------------------------------
# Provider request types
# ---------------------------------------------------------------------------

class OpenAIChatRequest(BaseModel):
    kind: Literal["openai"] = "openai"
    model: str
    messages: list[dict[str, str]]
    temperature: float
    max_tokens: int


class AnthropicMessagesRequest(BaseModel):
    kind: Literal["anthropic"] = "anthropic"
    model: str
    max_tokens: int
    messages: list[dict[str, str]]
    system: str | None = None
    temperature: float | None = None


ProviderRequest = Annotated[
    Union[OpenAIChatRequest, AnthropicMessagesRequest], Field(discriminator="kind")
]


def build_openai_request(config: ModelConfig, messages: list[ChatMessage]) -> OpenAIChatRequest:
    return OpenAIChatRequest(
        model=config.model,
        messages=[dict(m) for m in messages],
        temperature=config.temperature or 0.8,
        max_tokens=config.max_tokens or 2000,
    )


def build_anthropic_request(
    config: ModelConfig, messages: list[ChatMessage]
) -> AnthropicMessagesRequest:
    """Anthropic takes the system prompt at top level, not in the message list."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    chat = [dict(m) for m in messages if m["role"] != "system"]
    return AnthropicMessagesRequest(
        model=config.model,
        max_tokens=config.max_tokens or 2000,
        messages=chat,
        system="\n\n".join(system_parts) or None,
        temperature=config.temperature,
    )


def build_request(config: ModelConfig, messages: list[ChatMessage]) -> ProviderRequest:
    if config.provider == "anthropic":
        return build_anthropic_request(config, messages)
    return build_openai_request(config, messages)


def base_url_for(config: ModelConfig) -> str:
    if config.base_url:
        return config.base_url.rstrip("/")
    url = DEFAULT_BASE_URLS.get(config.provider)
    if not url:
        raise LLMError(f"No base URL configured for provider {config.provider!r}")
    return url


def extract_completion_text(data: Any) -> str:
    """Pull the completion text out of any supported response body."""
    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]
            if isinstance(choices[0].get("text"), str):
                return choices[0]["text"]
        content = data.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [
                block.get("text", "") for block in content
                if isinstance(block, dict) and block.get("type", "text") == "text"
            ]
            if parts:
                return "".join(parts)
    raise LLMError("Unexpected response format from LLM backend")


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client for chat-completion backends.

    Args:
        config:       Provider, model, credentials and sampling settings.
        timeout:      HTTP timeout in seconds. Defaults to 60.
        max_retries:  Extra attempts after a transport failure. Defaults to 2.
        retry_delay:  Seconds to wait between attempts.
    """

    def __init__(
        self,
        config: ModelConfig,
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        self._config = config
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    @property
    def config(self) -> ModelConfig:
        return self._config

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._config.provider == "anthropic":
            headers["x-api-key"] = self._config.api_key
            headers["anthropic-version"] = ANTHROPIC_VERSION
        else:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    def _build_request(self, messages: list[ChatMessage]) -> tuple[str, dict]:
        """Return (url, body) for the configured provider."""
        base = base_url_for(self._config)
        request = build_request(self._config, messages)
        if isinstance(request, AnthropicMessagesRequest):
            url = f"{base}/messages"
        else:
            url = f"{base}/chat/completions"
        body = request.model_dump(exclude={"kind"}, exclude_none=True)
        return url, body

    async def _post_once(self, url: str, body: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise LLMError(f"Transport failure talking to LLM backend: {e}") from e
        return resp

    async def __call__(self, stage: str, messages: list[ChatMessage]) -> str:
        if not self._config.has_credentials:
            raise MissingCredentialsError("Model configuration has no api key")
        url, body = self._build_request(messages)
        logger.debug(
            "llm call stage=%s url=%s messages=%d", stage, url, len(messages)
        )

        attempt = 0
        while True:
            try:
                resp = await self._post_once(url, body)
                break
            except LLMError as e:
                if attempt >= self._max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "llm call stage=%s failed (%s), retry %d/%d",
                    stage, e, attempt, self._max_retries,
                )
                await asyncio.sleep(self._retry_delay)

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = extract_completion_text(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


def llm_for(config: ModelConfig | None) -> HttpLLM | None:
    """An HttpLLM for the config, or None when there are no credentials."""
    if config is None or not config.has_credentials:
        return None
    return HttpLLM(config)
