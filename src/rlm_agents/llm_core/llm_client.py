"""
LLM Client for OpenAI-compatible chat-completion APIs.

The recursive loop only needs free text back from the model, plus the token
usage the provider reports, so this client exposes a single text mode:

    client = create_openai_client()
    response = await client.agenerate(
        messages=[{"role": "user", "content": "Hello"}],
        model="gpt-4o-mini",
    )
    print(response.content, response.usage)

Cancellation:
    Passing an asyncio.Event as ``abort_signal`` races the request against the
    event. When the event fires first the in-flight request is cancelled and
    LLMAbortedError is raised.

Factory Functions:
    - create_openai_client(): OpenAI
    - create_ollama_client(): local Ollama server
    - create_azure_client(): Azure OpenAI

See llm_configs.py for the provider defaults.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass, field

from loguru import logger
from openai import APIConnectionError, APIError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletion, ChatCompletionMessageParam

from rlm_agents.llm_core.llm_configs import Provider
from rlm_agents.settings import get_api_key, get_endpoint


# Exceptions
class LLMError(Exception):
    """Base exception for LLM errors."""

    pass


class LLMAPIError(LLMError):
    """API-level error from LLM provider."""

    pass


class LLMAbortedError(LLMError):
    """The request was cancelled through its abort signal."""

    pass


# Response types
@dataclass
class TextResponse:
    """Response for text mode."""

    content: str
    finish_reason: str | None = None
    usage: dict[str, t.Any] = field(default_factory=dict)
    raw_response: ChatCompletion | None = None


class TextGenerationService(t.Protocol):
    """Anything the recursive loop can ask for text.

    LLMClient is the production implementation; tests pass scripted stubs.
    """

    async def agenerate(
        self,
        messages: list[ChatCompletionMessageParam],
        model: str | None = None,
        *,
        abort_signal: asyncio.Event | None = None,
        **kwargs: t.Any,
    ) -> TextResponse: ...


async def _race_abort(
    request: t.Awaitable[ChatCompletion], abort_signal: asyncio.Event
) -> ChatCompletion:
    """Await ``request`` unless ``abort_signal`` is set first."""
    task = asyncio.ensure_future(request)
    waiter = asyncio.ensure_future(abort_signal.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()

    if task in done:
        return task.result()
    raise LLMAbortedError("Request aborted by abort signal")


class LLMClient:
    """
    Async text-generation client over an OpenAI-compatible endpoint.

    Args:
        async_client: Async OpenAI client used for every request
        default_model: Model used when agenerate() receives none
        default_sub_model: Model suggested for sub-queries made from guest code
        provider: Provider the client points at (for logging and defaults)

    Example:
        >>> client = LLMClient(AsyncOpenAI(), default_model="gpt-4o")
        >>> response = await client.agenerate(messages)
        >>> print(response.content)
    """

    def __init__(
        self,
        async_client: AsyncOpenAI | None = None,
        default_model: str | None = None,
        provider: Provider | None = None,
        default_sub_model: str | None = None,
    ):
        self._async_client = async_client
        self._default_model = default_model
        self._default_sub_model = default_sub_model
        self._provider = provider

    @property
    def default_model(self) -> str | None:
        return self._default_model

    @property
    def default_sub_model(self) -> str | None:
        return self._default_sub_model

    @property
    def provider(self) -> Provider | None:
        return self._provider

    def _process_response(self, response: ChatCompletion) -> TextResponse:
        """Turn a raw completion into a TextResponse."""
        if not response.choices:
            raise LLMError("Response contained no choices")

        choice = response.choices[0]
        usage: dict[str, t.Any] = {}
        if response.usage is not None:
            usage = response.usage.model_dump()
        elif self._provider is not None and self._provider.reports_usage_details:
            logger.warning(
                "Provider returned no usage | provider={} | model={}",
                self._provider.name,
                response.model,
            )

        return TextResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason,
            usage=usage,
            raw_response=response,
        )

    async def agenerate(
        self,
        messages: list[ChatCompletionMessageParam],
        model: str | None = None,
        *,
        abort_signal: asyncio.Event | None = None,
        **kwargs: t.Any,
    ) -> TextResponse:
        """
        Generate a text response from the LLM.

        Args:
            messages: List of chat messages
            model: Model name (uses default_model if not specified)
            abort_signal: Optional event; setting it cancels the request
            **kwargs: Additional kwargs passed to chat.completions.create()

        Returns:
            TextResponse with content and provider usage

        Raises:
            RuntimeError: If the async client is not configured
            LLMAPIError: API connection, rate limit or provider error
            LLMAbortedError: abort_signal fired before the response arrived
        """
        if self._async_client is None:
            raise RuntimeError(
                "Async client not configured. Pass 'async_client' to __init__."
            )

        model = model or self._default_model
        if not model:
            raise ValueError("model must be specified or set default_model")

        if abort_signal is not None and abort_signal.is_set():
            raise LLMAbortedError("Request aborted before it was sent")

        request = self._async_client.chat.completions.create(
            model=model, messages=messages, **kwargs
        )

        try:
            if abort_signal is None:
                response = await request
            else:
                response = await _race_abort(request, abort_signal)
        except (APIConnectionError, RateLimitError) as e:
            raise LLMAPIError(f"API error: {e}") from e
        except APIError as e:
            raise LLMAPIError(f"OpenAI API error: {e}") from e

        return self._process_response(response)


# Factory functions for common configurations
def create_openai_client(
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 120.0,
    default_model: str | None = None,
    default_sub_model: str | None = None,
) -> LLMClient:
    """
    Create an LLMClient configured for OpenAI.

    Args:
        api_key: OpenAI API key (uses settings if not set)
        base_url: Optional base URL override
        timeout: Request timeout in seconds
        default_model: Default model to use
        default_sub_model: Default model for llm_query() sub-calls

    Returns:
        Configured LLMClient
    """
    client_kwargs: dict[str, t.Any] = {"timeout": timeout}
    client_kwargs["api_key"] = api_key or get_api_key(Provider.OPENAI) or None
    client_kwargs["base_url"] = base_url or get_endpoint(Provider.OPENAI)

    return LLMClient(
        async_client=AsyncOpenAI(**client_kwargs),
        default_model=default_model or Provider.OPENAI.default_model,
        provider=Provider.OPENAI,
        default_sub_model=default_sub_model or Provider.OPENAI.default_sub_model,
    )


def create_ollama_client(
    base_url: str | None = None,
    timeout: float = 300.0,
    default_model: str | None = None,
    default_sub_model: str | None = None,
) -> LLMClient:
    """
    Create an LLMClient configured for a local Ollama server.

    Local models are slow on long REPL histories, hence the larger timeout.
    A custom default_model also serves sub-calls unless default_sub_model is
    given, since only pulled models can answer.
    """
    client_kwargs: dict[str, t.Any] = {
        "base_url": base_url or get_endpoint(Provider.OLLAMA),
        "api_key": get_api_key(Provider.OLLAMA),
        "timeout": timeout,
    }

    return LLMClient(
        async_client=AsyncOpenAI(**client_kwargs),
        default_model=default_model or Provider.OLLAMA.default_model,
        provider=Provider.OLLAMA,
        default_sub_model=(
            default_sub_model or default_model or Provider.OLLAMA.default_sub_model
        ),
    )


def create_azure_client(
    endpoint: str | None = None,
    api_key: str | None = None,
    timeout: float = 120.0,
    default_model: str | None = None,
    default_sub_model: str | None = None,
) -> LLMClient:
    """
    Create an LLMClient configured for Azure OpenAI.

    Args:
        endpoint: Azure OpenAI endpoint (uses settings if not set)
        api_key: Azure API key (uses settings if not set)
        timeout: Request timeout in seconds
        default_model: Default deployment name
        default_sub_model: Deployment for sub-calls (defaults to default_model)

    Returns:
        Configured LLMClient for Azure
    """
    resolved_endpoint = endpoint or get_endpoint(Provider.AZURE_OPENAI)
    resolved_api_key = api_key or get_api_key(Provider.AZURE_OPENAI)

    if not resolved_endpoint:
        raise ValueError("endpoint or AZURE_OPENAI_ENDPOINT env var required")
    if not resolved_api_key:
        raise ValueError("api_key or AZURE_OPENAI_API_KEY env var required")

    client_kwargs: dict[str, t.Any] = {
        "base_url": resolved_endpoint.rstrip("/"),
        "api_key": resolved_api_key,
        "timeout": timeout,
    }

    return LLMClient(
        async_client=AsyncOpenAI(**client_kwargs),
        default_model=default_model or Provider.AZURE_OPENAI.default_model,
        provider=Provider.AZURE_OPENAI,
        default_sub_model=(
            default_sub_model
            or default_model
            or Provider.AZURE_OPENAI.default_sub_model
        ),
    )
