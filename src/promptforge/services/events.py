"""Fire-and-forget domain events (batch_create, batch_start, batch_complete, credits_purchase).

Handlers run as background tasks; a failing or slow subscriber never delays or
breaks the engine.
"""

import asyncio
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


async def log_event(name: str, payload: dict[str, Any]) -> None:
    """Default subscriber: record the event in the structured log."""
    logger.info(f"events.{name}", **payload)


class EventPublisher:
    """Publishes named events to subscribed async handlers."""

    def __init__(self, handlers: list[EventHandler] | None = None):
        self._handlers: list[EventHandler] = list(handlers) if handlers is not None else [log_event]
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def publish(self, name: str, **payload: Any) -> None:
        """Schedule every handler for the event and return immediately.

        Must be called from a running event loop.
        """
        for handler in self._handlers:
            task = asyncio.create_task(self._run(handler, name, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, handler: EventHandler, name: str, payload: dict[str, Any]) -> None:
        try:
            await handler(name, payload)
        except Exception as e:
            logger.warning(
                "events.handler_failed",
                event=name,
                handler=getattr(handler, "__name__", repr(handler)),
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for handlers scheduled so far (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
