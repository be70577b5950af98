"""
Integrations layer.
This package contains all code used to communicate with the M-Pesa Daraja gateway:
- OAuth token exchange
- STK push submission and status queries
- callback (webhook) decoding

Key rule:
- The payment service MUST NOT call the gateway directly over HTTP.
- It calls a gateway client (under src/integrations/clients).
- We use the MOCK client during development and the REAL_HTTP client when credentials are configured.

Switching implementations:
- The selection of mock vs real clients happens in ONE place (src/api/main.py).
"""

from .contracts.interfaces import (
    CreatePaymentInput,
    Payment,
    PaymentGateway,
    PaymentStatus,
)
from .contracts.payments import (
    ALLOWED_TRANSITIONS,
    ParsedCallback,
    can_transition,
    is_terminal_status,
    normalize_phone_number,
    parse_callback_payload,
    validate_amount,
    validate_phone_number,
)

__all__ = [
    # interfaces
    "CreatePaymentInput", "Payment", "PaymentGateway", "PaymentStatus",
    # payments
    "ALLOWED_TRANSITIONS", "ParsedCallback", "can_transition", "is_terminal_status",
    "normalize_phone_number", "parse_callback_payload", "validate_amount", "validate_phone_number",
]
