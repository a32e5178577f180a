"""Provider error classification into transient / permanent / quota."""

import httpx

from promptforge.services.exceptions import (
    PermanentProviderError,
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
)

QUOTA_MARKERS = (
    "insufficient_quota",
    "quota",
    "billing",
    "insufficient credit",
    "out of credits",
    "payment required",
)
AUTH_MARKERS = ("unauthorized", "forbidden", "authentication", "invalid api token", "invalid api key")
CONTENT_POLICY_MARKERS = ("content policy", "nsfw", "safety", "inappropriate")


def classify_status(status: int | None, message: str) -> ProviderError:
    """Classify an HTTP status code plus error text.

    Classification rules:
        - 402 or quota/billing markers → QuotaExceededError
        - 408, 429, 5xx → TransientProviderError
        - other 4xx (401/403 auth, 400/422 invalid input) → PermanentProviderError
    """
    message_lower = message.lower()

    if status == 402 or any(marker in message_lower for marker in QUOTA_MARKERS):
        return QuotaExceededError(f"Provider quota exhausted: {message}")

    if status in (408, 429) or (status is not None and status >= 500):
        return TransientProviderError(f"Provider unavailable ({status}): {message}")

    if status in (401, 403):
        return PermanentProviderError(f"Authentication failed: {message}")

    return PermanentProviderError(f"Provider rejected request ({status}): {message}")


def classify_replicate_error(exception: Exception) -> ProviderError:
    """Classify exception raised by the Replicate SDK into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified ProviderError subclass instance

    Classification rules:
        - Timeout errors → TransientProviderError
        - 429 (rate limit), 5xx → TransientProviderError
        - 402 / quota / billing → QuotaExceededError
        - 401/403 (authentication) → PermanentProviderError
        - Content policy violations → PermanentProviderError
        - Connection errors → TransientProviderError
        - Anything else → PermanentProviderError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()
    status = getattr(exception, "status", None)

    if isinstance(status, int):
        return classify_status(status, error_message)

    if "timeout" in error_message_lower or "timed out" in error_message_lower:
        return TransientProviderError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return TransientProviderError(f"Rate limit exceeded: {error_message}")

    if "503" in error_message or "service unavailable" in error_message_lower:
        return TransientProviderError(f"Service unavailable: {error_message}")

    if "402" in error_message or any(m in error_message_lower for m in QUOTA_MARKERS):
        return QuotaExceededError(f"Provider quota exhausted: {error_message}")

    if "401" in error_message or "403" in error_message or any(
        m in error_message_lower for m in AUTH_MARKERS
    ):
        return PermanentProviderError(f"Authentication failed: {error_message}")

    if any(m in error_message_lower for m in CONTENT_POLICY_MARKERS):
        return PermanentProviderError(f"Content policy violation: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return TransientProviderError(f"Connection error: {error_message}")

    return PermanentProviderError(f"Permanent error: {error_message}")


def classify_http_error(exception: Exception) -> ProviderError:
    """Classify exception raised while calling an HTTP provider through httpx."""
    if isinstance(exception, httpx.HTTPStatusError):
        response = exception.response
        return classify_status(response.status_code, response.text)

    if isinstance(exception, httpx.TimeoutException):
        return TransientProviderError(f"Network timeout: {exception}")

    if isinstance(exception, (httpx.TransportError, ConnectionError, OSError)):
        return TransientProviderError(f"Connection error: {exception}")

    if isinstance(exception, ValueError):
        # Body was not valid JSON
        return PermanentProviderError(f"Malformed provider response: {exception}")

    return PermanentProviderError(f"Permanent error: {exception}")
