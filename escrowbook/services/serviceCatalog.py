"""
Service reference resolution.

A booking points at exactly one of two catalogs: the platform's own
``Service`` list or a provider-published ``ProviderService``. The pair
(``service_type``, ``service_id``) stored on the booking is turned into a
``ServiceRef`` and resolved explicitly with ``resolve_service_ref``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.core.errors import InvalidStateError, NotFoundError
from escrowbook.models import ProviderService, Service, ServiceType


@dataclass(frozen=True)
class CatalogServiceRef:
    id: uuid.UUID
    service_type = ServiceType.CATALOG


@dataclass(frozen=True)
class ProviderServiceRef:
    id: uuid.UUID
    service_type = ServiceType.PROVIDER


ServiceRef = Union[CatalogServiceRef, ProviderServiceRef]


@dataclass(frozen=True)
class ResolvedService:
    ref: ServiceRef
    title: str
    category_id: uuid.UUID
    price: int
    provider_id: uuid.UUID | None = None


def make_service_ref(service_type: ServiceType | str, service_id: uuid.UUID) -> ServiceRef:
    kind = ServiceType(service_type)
    if kind is ServiceType.CATALOG:
        return CatalogServiceRef(service_id)
    return ProviderServiceRef(service_id)


async def resolve_service_ref(db: AsyncSession, ref: ServiceRef) -> ResolvedService:
    """Load the referenced service and return its category and price.

    Raises:
        NotFoundError: The service does not exist.
        InvalidStateError: The service exists but is inactive.
    """
    if isinstance(ref, CatalogServiceRef):
        service = await db.scalar(select(Service).where(Service.id == ref.id))
        if service is None:
            raise NotFoundError("Service", ref.id)
        if not service.is_active:
            raise InvalidStateError(f"Service '{service.title}' is not active.")
        return ResolvedService(
            ref=ref,
            title=service.title,
            category_id=service.category_id,
            price=service.base_price,
        )

    offering = await db.scalar(select(ProviderService).where(ProviderService.id == ref.id))
    if offering is None:
        raise NotFoundError("ProviderService", ref.id)
    if not offering.is_active:
        raise InvalidStateError(f"Provider service '{offering.title}' is not active.")
    return ResolvedService(
        ref=ref,
        title=offering.title,
        category_id=offering.category_id,
        price=offering.price,
        provider_id=offering.provider_id,
    )
