"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the escrow runtime and configuration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, Request

from multisig_escrow.config import Settings, get_settings
from multisig_escrow.infrastructure.database.engine import get_async_session
from multisig_escrow.services.deal_service import DealService
from multisig_escrow.services.dispute_service import DisputeService
from multisig_escrow.services.key_validation import KeyValidationGate

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.services.runtime import EscrowRuntime


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_runtime(request: Request) -> EscrowRuntime:
    """Provide the runtime built during the app lifespan."""
    return request.app.state.runtime


async def get_deal_service(
    session: AsyncSession = Depends(get_db_session),
    runtime: EscrowRuntime = Depends(get_runtime),
) -> DealService:
    return DealService(session, runtime)


async def get_dispute_service(
    session: AsyncSession = Depends(get_db_session),
    runtime: EscrowRuntime = Depends(get_runtime),
) -> DisputeService:
    return DisputeService(session, runtime)


async def get_key_gate(
    session: AsyncSession = Depends(get_db_session),
    runtime: EscrowRuntime = Depends(get_runtime),
) -> KeyValidationGate:
    return KeyValidationGate(session, runtime)


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
