"""Provider dispatch adapter with retry, backoff and per-attempt timeout.

The adapter is the only component that talks to generation providers. Callers
get a GenerationResult or a classified ProviderError, nothing else.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Mapping

import structlog

from promptforge.core.config import Settings
from promptforge.services.dispatch.catalog import ProviderModelDescriptor
from promptforge.services.dispatch.normalizers import GenerationResult
from promptforge.services.dispatch.routes import ProviderRoute, default_routes
from promptforge.services.dispatch.transports import HttpTransport, ReplicateTransport, Transport
from promptforge.services.exceptions import (
    PermanentProviderError,
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
    ValidationError,
)

logger = structlog.get_logger(__name__)


class DispatchAdapter:
    """Registry of provider routes plus the retry policy applied to every dispatch."""

    def __init__(
        self,
        transports: Mapping[str, Transport],
        credentials: Mapping[str, str],
        *,
        max_attempts: int = 3,
        timeout_seconds: float = 300.0,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize adapter.

        Args:
            transports: Transport per route transport name ("replicate", "http")
            credentials: API credential per provider id
            max_attempts: Attempts per dispatch for transient failures
            timeout_seconds: Hard deadline for one attempt
            backoff_base_seconds: First retry delay (doubles per attempt)
            backoff_max_seconds: Upper bound on the exponential delay
            sleep: Awaitable used between attempts (replaced in tests)
        """
        self._transports = dict(transports)
        self._credentials = dict(credentials)
        self._routes: dict[str, ProviderRoute] = {}
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep

    def register(self, route: ProviderRoute) -> None:
        self._routes[route.descriptor.key] = route

    def get_route(self, model_key: str) -> ProviderRoute:
        """Raises ValidationError for unknown model keys."""
        route = self._routes.get(model_key)
        if route is None:
            raise ValidationError(
                f"Unknown model: {model_key}",
                details={"model_id": model_key, "known_models": sorted(self._routes)},
            )
        return route

    def get_descriptor(self, model_key: str) -> ProviderModelDescriptor:
        return self.get_route(model_key).descriptor

    def descriptors(self) -> list[ProviderModelDescriptor]:
        return [route.descriptor for route in self._routes.values()]

    def is_available(self, model_key: str) -> bool:
        """True when the model's provider has credentials and a transport."""
        route = self.get_route(model_key)
        return bool(self._credentials.get(route.descriptor.provider_id)) and (
            route.transport in self._transports
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given failed attempt (1-based).

        Exponential (base * 2**(attempt-1)), capped, plus up to 25% random jitter.
        """
        delay = min(self.backoff_base_seconds * 2 ** (attempt - 1), self.backoff_max_seconds)
        return delay + random.uniform(0, delay * 0.25)

    async def dispatch(
        self, model_key: str, prompt: str, settings: dict[str, Any] | None = None
    ) -> GenerationResult:
        """Send one generation request and return its normalized result.

        Args:
            model_key: Catalog key of the model
            prompt: Validated prompt text
            settings: Per-item generation settings (clamped by the request mapper)

        Returns:
            GenerationResult with the asset URL and metadata

        Raises:
            ValidationError: Unknown model key
            TransientProviderError: Still failing after max_attempts
            PermanentProviderError: Rejected by the provider, not retried
            QuotaExceededError: Provider account exhausted, not retried
        """
        route = self.get_route(model_key)
        descriptor = route.descriptor

        credential = self._credentials.get(descriptor.provider_id)
        if not credential:
            raise PermanentProviderError(
                f"Provider {descriptor.provider_id} is not configured for model {model_key}"
            )
        transport = self._transports.get(route.transport)
        if transport is None:
            raise PermanentProviderError(f"No transport registered for {route.transport}")

        endpoint = route.endpoint_builder(descriptor, credential)
        payload = route.request_mapper(descriptor, prompt, settings or {})

        attempt = 0
        while True:
            attempt += 1
            logger.info("dispatch.attempt", model_key=model_key, attempt=attempt)
            try:
                raw = await asyncio.wait_for(
                    transport.send(endpoint, payload), timeout=self.timeout_seconds
                )
                result = route.response_normalizer(descriptor, raw, payload)
            except TimeoutError as e:
                error: ProviderError = TransientProviderError(
                    f"Provider call timed out after {self.timeout_seconds}s"
                )
                cause: BaseException | None = e
            except ProviderError as e:
                error, cause = e, e.__cause__
            except Exception as e:
                error, cause = route.error_classifier(e), e
            else:
                logger.info("dispatch.succeeded", model_key=model_key, attempt=attempt)
                return result

            logger.warning(
                "dispatch.attempt_failed",
                model_key=model_key,
                attempt=attempt,
                error_kind=error.error_kind,
                error=error.message,
            )

            if isinstance(error, QuotaExceededError):
                logger.error(
                    "dispatch.quota_exceeded",
                    model_key=model_key,
                    provider=descriptor.provider_id,
                    error=error.message,
                )

            if not error.retryable or attempt >= self.max_attempts:
                raise error from cause

            delay = self.backoff_delay(attempt)
            logger.info("dispatch.retry_scheduled", model_key=model_key, delay_seconds=delay)
            await self._sleep(delay)


def build_default_adapter(
    settings: Settings,
    transports: Mapping[str, Transport] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> DispatchAdapter:
    """Create an adapter with every catalog route registered.

    Args:
        settings: Application settings (credentials and retry policy)
        transports: Override the real Replicate/httpx transports (tests)
        sleep: Override the backoff sleep (tests)
    """
    adapter = DispatchAdapter(
        transports if transports is not None else {
            "replicate": ReplicateTransport(),
            "http": HttpTransport(),
        },
        settings.provider_credentials,
        max_attempts=settings.dispatch_max_attempts,
        timeout_seconds=settings.dispatch_timeout_seconds,
        backoff_base_seconds=settings.dispatch_backoff_base_seconds,
        backoff_max_seconds=settings.dispatch_backoff_max_seconds,
        sleep=sleep,
    )
    for route in default_routes():
        adapter.register(route)
    return adapter
