"""AI provider error classification.

One place that decides whether a provider failure is worth retrying, what
the user should be told, and how long a caller should wait before trying
again. Nothing here schedules retries; the only automatic recovery is the
primary-to-fallback switch in :func:`taleforge.providers.generate_with_fallback`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class AIProviderType(str, Enum):
    """External AI providers the service talks to."""

    OPENAI_GPT = "openai-gpt"
    OPENAI_DALLE = "openai-dalle"
    OPENAI_TTS = "openai-tts"
    OVH_AI_ENDPOINTS = "ovh-ai-endpoints"
    ELEVENLABS = "elevenlabs"


class GenerationPhase(str, Enum):
    """Story generation phases used in error logs."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    CHOICES = "choices"


CONNECTIVITY_MESSAGE = (
    "Having trouble connecting to our AI services. "
    "Please check your internet connection and try again."
)
HIGH_DEMAND_MESSAGE = (
    "Our AI services are experiencing high demand. Please wait a moment and try again."
)
GENERIC_MESSAGE = "AI service temporarily unavailable. Please try again in a moment."

# (provider, operation) -> message
OPERATION_MESSAGES: dict[tuple[AIProviderType, str], str] = {
    (AIProviderType.OPENAI_GPT, "text-generation"): (
        "Unable to generate story text right now. "
        "Our storytelling AI is temporarily unavailable."
    ),
    (AIProviderType.OVH_AI_ENDPOINTS, "text-generation"): (
        "Unable to generate story text right now. "
        "Our storytelling AI is temporarily unavailable."
    ),
    (AIProviderType.OPENAI_DALLE, "image-generation"): (
        "Unable to create story images right now. "
        "You can continue with your story and add images later."
    ),
    (AIProviderType.OVH_AI_ENDPOINTS, "image-generation"): (
        "Primary image generation service is unavailable. Attempting to use backup service..."
    ),
    (AIProviderType.OPENAI_TTS, "audio-generation"): (
        "Unable to generate voice narration right now. Your story is still available to read."
    ),
    (AIProviderType.ELEVENLABS, "audio-generation"): (
        "Unable to generate voice narration right now. Your story is still available to read."
    ),
}


@dataclass
class ProviderError:
    """A classified provider failure."""

    provider: AIProviderType
    operation: str
    original_error: BaseException
    retryable: bool
    user_message: str
    debug_info: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def message(self) -> str:
        return str(self.original_error)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON error bodies."""
        return {
            "provider": self.provider.value,
            "operation": self.operation,
            "retryable": self.retryable,
            "user_message": self.user_message,
            "error": self.message,
            "timestamp": self.timestamp,
        }


def _lower_message(error: BaseException | ProviderError) -> str:
    if isinstance(error, ProviderError):
        error = error.original_error
    return str(error).lower()


def _has_any(message: str, needles: tuple[str, ...]) -> bool:
    return any(needle in message for needle in needles)


def is_retryable_error(error: BaseException) -> bool:
    """Whether a failure is worth retrying.

    Checked in order: network/timeout/connection, rate limiting and server
    errors are retryable; API key and quota/billing problems are not;
    anything unrecognized is treated as retryable.
    """
    message = _lower_message(error)

    if _has_any(message, ("network", "timeout", "connection")):
        return True
    if _has_any(message, ("rate limit", "429")):
        return True
    if _has_any(message, ("500", "503", "internal server error")):
        return True
    if _has_any(message, ("api key", "unauthorized", "401")):
        return False
    if _has_any(message, ("quota", "billing")):
        return False
    return True


def get_user_friendly_message(
    provider: AIProviderType,
    operation: str,
    error: BaseException,
) -> str:
    """Message suitable for a toast in the UI."""
    message = _lower_message(error)

    if _has_any(message, ("network", "connection")):
        return CONNECTIVITY_MESSAGE
    if _has_any(message, ("rate limit", "429")):
        return HIGH_DEMAND_MESSAGE
    return OPERATION_MESSAGES.get((provider, operation), GENERIC_MESSAGE)


def handle_provider_error(
    provider: AIProviderType,
    operation: str,
    error: BaseException,
    debug_info: dict[str, Any] | None = None,
) -> ProviderError:
    """Classify and log a provider failure."""
    provider_error = ProviderError(
        provider=provider,
        operation=operation,
        original_error=error,
        retryable=is_retryable_error(error),
        user_message=get_user_friendly_message(provider, operation, error),
        debug_info=debug_info,
    )
    logger.error(
        "[%s] %s failed: %s (retryable=%s, debug=%s)",
        provider.value.upper(),
        operation,
        error,
        provider_error.retryable,
        debug_info,
    )
    return provider_error


def handle_provider_fallback(
    primary: AIProviderType,
    fallback: AIProviderType,
    operation: str,
    primary_error: ProviderError,
) -> None:
    """Record a switch from the primary provider to its fallback."""
    logger.warning(
        "[FALLBACK] %s -> %s for %s: %s (retryable=%s)",
        primary.value,
        fallback.value,
        operation,
        primary_error.message,
        primary_error.retryable,
    )


def get_retry_delay(error: ProviderError | BaseException, attempt_count: int) -> float:
    """Suggested wait in seconds before retry number ``attempt_count``."""
    message = _lower_message(error)

    if "rate limit" in message:
        return float(min(2**attempt_count, 30))
    if "500" in message:
        return float(min(2 * attempt_count, 10))
    return float(min(attempt_count, 5))


def log_story_generation_error(
    phase: GenerationPhase | str,
    error: BaseException,
    context: dict[str, Any] | None = None,
) -> None:
    """Log a failure in one phase of story generation."""
    phase_name = GenerationPhase(phase).value
    logger.error(
        "[STORY_GENERATION] %s generation failed: %s",
        phase_name.upper(),
        error,
        extra={"generation_context": context or {}},
        exc_info=error,
    )
