"""FastAPI dependencies for request context and shared services.

This module provides reusable FastAPI dependencies for:
- Caller identification (X-User-Id stand-in for a real auth collaborator)
- Access to the services created by the application lifespan
"""

from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from promptforge.core.config import Settings
from promptforge.services.batch.orchestrator import BatchJobOrchestrator
from promptforge.services.dispatch.adapter import DispatchAdapter
from promptforge.services.ledger import CreditLedger

logger = structlog.get_logger()

MAX_USER_ID_LENGTH = 255


def get_settings(request: Request) -> Settings:
    """Get the settings instance loaded at startup."""
    return request.app.state.settings


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_orchestrator(request: Request) -> BatchJobOrchestrator:
    return request.app.state.orchestrator


def get_adapter(request: Request) -> DispatchAdapter:
    return request.app.state.adapter


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
    ledger: CreditLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
) -> str:
    """Identify the caller from the X-User-Id header.

    The first request of an unknown user opens their account with the configured
    welcome credits; later requests leave the account untouched.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing or blank
    """
    user_id = (x_user_id or "").strip()
    if not user_id or len(user_id) > MAX_USER_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid X-User-Id header"
        )

    if await ledger.open_account(user_id, initial_credits=settings.welcome_credits):
        logger.info("account.welcome_credits_granted", user_id=user_id, credits=settings.welcome_credits)

    return user_id
