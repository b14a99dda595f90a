"""
Shared FastAPI dependencies for the escrowbook API.

Provides the async database session dependency used by all route handlers,
the transfer/payment gateway dependencies, and the translation of domain
errors into ``HTTPException`` responses.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrowbook.core.config import settings
from escrowbook.core.errors import DomainError
from escrowbook.integrations.gateways import (
    PaymentGateway,
    TransferGateway,
    get_payment_gateway,
    get_transfer_gateway,
)

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at module import time.  The session factory
# produces lightweight ``AsyncSession`` instances that are scoped to a single
# request via the ``get_db`` dependency below.
# ---------------------------------------------------------------------------

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session; commit on success, roll back on error.

    Services only flush, so everything a request changes lands in this one
    commit. Payout processing is the exception and commits its claim itself.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


DBSession = Annotated[AsyncSession, Depends(get_db)]


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_transfer_gateway_dep() -> TransferGateway:
    return get_transfer_gateway()


@lru_cache(maxsize=1)
def get_payment_gateway_dep() -> PaymentGateway:
    return get_payment_gateway()


TransferGatewayDep = Annotated[TransferGateway, Depends(get_transfer_gateway_dep)]
PaymentGatewayDep = Annotated[PaymentGateway, Depends(get_payment_gateway_dep)]


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------

def http_error(exc: DomainError) -> HTTPException:
    """Map a domain error to an ``HTTPException`` using its status hint."""
    return HTTPException(
        status_code=exc.http_status,
        detail={"error": exc.code, "message": exc.message, "context": _json_context(exc)},
    )


def _json_context(exc: DomainError) -> dict[str, str]:
    return {k: str(v) for k, v in exc.context.items() if v is not None}
