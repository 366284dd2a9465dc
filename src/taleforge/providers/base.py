"""Shared provider plumbing: request errors, HTTP helper, fallback runner."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

import httpx

from taleforge.api.exceptions import ProviderUnavailableError
from taleforge.services.provider_errors import (
    AIProviderType,
    handle_provider_error,
    handle_provider_fallback,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = TypeVar("P", bound="Provider")


class ProviderRequestError(Exception):
    """An AI provider request failed.

    The message always carries the HTTP status code (when there is one) so
    the error classifier can tell rate limits from server errors.
    """

    def __init__(
        self,
        provider: AIProviderType,
        message: str,
        status_code: int | None = None,
    ):
        self.provider = provider
        self.status_code = status_code
        if status_code is not None:
            message = f"{provider.value} request failed with status {status_code}: {message}"
        else:
            message = f"{provider.value} request failed: {message}"
        super().__init__(message)


class Provider(Protocol):
    """Anything that talks to one AI provider."""

    provider_type: AIProviderType
    model: str


class HTTPProvider:
    """Base class for providers called over HTTP with httpx."""

    provider_type: AIProviderType

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """POST JSON and return the response, raising ProviderRequestError on failure."""
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers=headers or self._headers(),
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            body = e.response.text[:500]
            raise ProviderRequestError(
                self.provider_type,
                body or e.response.reason_phrase,
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderRequestError(self.provider_type, f"timeout after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise ProviderRequestError(self.provider_type, f"connection error: {e}") from e

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(provider={self.provider_type.value}, model='{self.model}')>"


async def generate_with_fallback(
    primary: P | None,
    fallback: P | None,
    operation: str,
    call: Callable[[P], Awaitable[T]],
) -> tuple[T, P]:
    """Run ``call`` against the primary provider, then the fallback.

    Returns the result and the provider that produced it. Raises
    ProviderUnavailableError with the last classified failure when no
    configured provider succeeds.
    """
    providers = [p for p in (primary, fallback) if p is not None]
    if not providers:
        raise ProviderUnavailableError(
            handle_provider_error(
                _default_type(operation),
                operation,
                RuntimeError("No provider configured (api key missing)"),
            )
        )

    last_error = None
    for index, provider in enumerate(providers):
        try:
            return await call(provider), provider
        except (ProviderRequestError, httpx.HTTPError, ValueError, KeyError) as e:
            last_error = handle_provider_error(
                provider.provider_type,
                operation,
                e,
                debug_info={"model": provider.model},
            )
            if index + 1 < len(providers):
                handle_provider_fallback(
                    provider.provider_type,
                    providers[index + 1].provider_type,
                    operation,
                    last_error,
                )

    raise ProviderUnavailableError(last_error)


def _default_type(operation: str) -> AIProviderType:
    return {
        "image-generation": AIProviderType.OPENAI_DALLE,
        "audio-generation": AIProviderType.OPENAI_TTS,
    }.get(operation, AIProviderType.OPENAI_GPT)
