"""Translation of storage driver faults into the service error taxonomy."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy.exc import SQLAlchemyError

from promptforge.services.exceptions import InfrastructureError

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def translate_storage_errors(operation: str, **context) -> AsyncIterator[None]:
    """Re-raise database and connection faults as InfrastructureError.

    Args:
        operation: Dotted operation name used in logs and the error message
        **context: Extra structured log fields (job_id, user_id, ...)

    Raises:
        InfrastructureError: If the wrapped block raised SQLAlchemyError or OSError
    """
    try:
        yield
    except (SQLAlchemyError, OSError) as e:
        logger.error(
            "storage.error",
            operation=operation,
            error_type=type(e).__name__,
            error_message=str(e),
            **context,
        )
        raise InfrastructureError(f"Storage unavailable during {operation}: {e}") from e
