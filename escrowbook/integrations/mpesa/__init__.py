"""
M-Pesa Integration Module
=========================

Usage::

    from escrowbook.integrations.mpesa import MpesaPaymentGateway, parse_stk_callback
"""

from .stkService import (
    MpesaPaymentGateway,
    generate_password,
    normalize_phone,
    parse_stk_callback,
)

__all__ = [
    "MpesaPaymentGateway",
    "generate_password",
    "normalize_phone",
    "parse_stk_callback",
]
