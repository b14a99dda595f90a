"""
Paystack Integration Module
===========================

Usage::

    from escrowbook.integrations.paystack import PaystackTransferGateway, verify_signature
"""

from .transferService import (
    PaystackTransferGateway,
    map_status,
    parse_transfer_event,
    verify_signature,
)

__all__ = [
    "PaystackTransferGateway",
    "map_status",
    "parse_transfer_event",
    "verify_signature",
]
