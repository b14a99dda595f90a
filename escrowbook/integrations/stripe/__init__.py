"""
Stripe Integration Module
=========================

Usage::

    from escrowbook.integrations.stripe import StripeTransferGateway
"""

from .transferService import StripeTransferGateway

__all__ = [
    "StripeTransferGateway",
]
