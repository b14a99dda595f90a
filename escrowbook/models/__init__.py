"""
Escrowbook SQLAlchemy Models
============================

Central import point for all ORM models. Import ``Base`` from here for
Alembic auto-generation and for the ``create_all`` convenience in tests.

Usage::

    from escrowbook.models import Base, Booking, EscrowPayment, Payout
"""

# -- Base & Mixins --
from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# -- Catalog --
from .catalog import ProviderService, Service, ServiceCategory, ServiceType

# -- Providers --
from .provider import PayoutMethod, ProviderProfile, provider_categories

# -- Discounts --
from .discount import DiscountCode, DiscountRedemption, DiscountType

# -- Bookings --
from .booking import (
    Booking,
    BookingMessage,
    BookingProvider,
    BookingStatus,
    BookingTimelineEntry,
    MessageType,
    PaymentMethod,
    PaymentStatus,
)

# -- Escrow --
from .escrow import EscrowEvent, EscrowEventType, EscrowPayment, EscrowStatus, ReleaseMethod

# -- Payouts --
from .payout import Payout, PayoutEvent, PayoutStatus

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    # Catalog
    "ServiceCategory",
    "Service",
    "ProviderService",
    "ServiceType",
    # Providers
    "ProviderProfile",
    "PayoutMethod",
    "provider_categories",
    # Discounts
    "DiscountCode",
    "DiscountRedemption",
    "DiscountType",
    # Bookings
    "Booking",
    "BookingStatus",
    "BookingProvider",
    "BookingTimelineEntry",
    "BookingMessage",
    "MessageType",
    "PaymentMethod",
    "PaymentStatus",
    # Escrow
    "EscrowPayment",
    "EscrowStatus",
    "EscrowEvent",
    "EscrowEventType",
    "ReleaseMethod",
    # Payouts
    "Payout",
    "PayoutStatus",
    "PayoutEvent",
]
