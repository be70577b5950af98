"""
Payment contract: validation helpers, the status state machine and the
typed decoding of the STK push callback envelope.

Used by:
- clients/real_http/daraja.py (real Daraja calls)
- clients/mocks/daraja.py (fake responses for development/testing)
- policy/payment_service.py (state transitions)

Both gateway clients must validate and normalize input the same way, so the
rules live here rather than in either client.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional

from src.error_handler import ValidationError
from .interfaces import PaymentStatus

COUNTRY_CODE = "254"
MAX_AMOUNT = 70_000
ACCOUNT_REFERENCE_MAX_LENGTH = 12
TRANSACTION_DESC_MAX_LENGTH = 13

# Country code plus 9 digits. The 7xx/1xx operator prefix is checked by
# CreatePaymentRequest at the HTTP layer.
_PHONE_PATTERN = re.compile(r"^254\d{9}$")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def normalize_phone_number(phone_number: str) -> str:
    """Convert a leading 0 to the country code and strip a leading '+'."""
    value = (phone_number or "").strip()
    if value.startswith("0"):
        value = COUNTRY_CODE + value[1:]
    if value.startswith("+"):
        value = value[1:]
    return value


def validate_phone_number(phone_number: str) -> str:
    """Return the normalized phone number or raise ValidationError."""
    normalized = normalize_phone_number(phone_number)
    if not _PHONE_PATTERN.match(normalized):
        raise ValidationError("Invalid phone number format. Expected format: 254XXXXXXXXX")
    return normalized


def validate_amount(amount: Any) -> int:
    """Amounts are whole shillings in (0, 70000]."""
    if isinstance(amount, bool):
        raise ValidationError("Amount must be a whole number")
    if isinstance(amount, float):
        if not amount.is_integer():
            raise ValidationError("Amount must be a whole number")
        amount = int(amount)
    if not isinstance(amount, int):
        raise ValidationError("Amount must be a whole number")
    if amount <= 0 or amount > MAX_AMOUNT:
        raise ValidationError("Amount must be between 1 and 70,000 KES")
    return amount


def truncate_account_reference(reference: str) -> str:
    return (reference or "")[:ACCOUNT_REFERENCE_MAX_LENGTH]


def truncate_transaction_description(description: str) -> str:
    return (description or "")[:TRANSACTION_DESC_MAX_LENGTH]


def normalize_result_code(value: Any) -> str:
    """The gateway sends result codes as numbers or strings; compare them as strings."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def is_success_code(value: Any) -> bool:
    return normalize_result_code(value) == "0"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.FAILED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def is_terminal_status(status: PaymentStatus) -> bool:
    """Return True if the payment has reached a final, non-changeable state."""
    return not ALLOWED_TRANSITIONS[status]


# ---------------------------------------------------------------------------
# Callback envelope
# ---------------------------------------------------------------------------

def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class CallbackMetadata:
    """`CallbackMetadata.Item` flattened into a name -> value mapping."""

    items: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def decode(cls, raw: Any) -> Optional["CallbackMetadata"]:
        if not isinstance(raw, Mapping):
            return None
        items: Dict[str, Any] = {}
        item_list = raw.get("Item")
        if isinstance(item_list, list):
            for item in item_list:
                if not isinstance(item, Mapping):
                    continue
                name = item.get("Name")
                if isinstance(name, str) and "Value" in item:
                    items[name] = item["Value"]
        return cls(items=items)


@dataclass
class StkCallback:
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    metadata: Optional[CallbackMetadata] = None

    @classmethod
    def decode(cls, raw: Any) -> Optional["StkCallback"]:
        if not isinstance(raw, Mapping):
            return None
        result_code = raw.get("ResultCode")
        result_desc = raw.get("ResultDesc")
        return cls(
            result_code=normalize_result_code(result_code) if result_code is not None else None,
            result_desc=str(result_desc) if result_desc is not None else None,
            merchant_request_id=_optional_str(raw.get("MerchantRequestID")),
            checkout_request_id=_optional_str(raw.get("CheckoutRequestID")),
            metadata=CallbackMetadata.decode(raw.get("CallbackMetadata")),
        )


@dataclass
class CallbackEnvelope:
    stk_callback: Optional[StkCallback] = None

    @classmethod
    def decode(cls, raw: Any) -> Optional["CallbackEnvelope"]:
        if not isinstance(raw, Mapping):
            return None
        return cls(stk_callback=StkCallback.decode(raw.get("stkCallback")))


@dataclass
class ParsedCallback:
    """Flat view of a callback; any field missing from the payload is None."""

    raw: Dict[str, Any]
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    items: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.result_code is not None and is_success_code(self.result_code)


def parse_callback_payload(payload: Any) -> ParsedCallback:
    """
    Decode `{"Body": {"stkCallback": {...}}}`.

    Only a non-object payload is rejected. The shape of the inner layers varies
    with the outcome (failed pushes carry no CallbackMetadata), so an absent
    layer yields partial output instead of an error.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Invalid callback data format")

    parsed = ParsedCallback(raw=dict(payload))
    envelope = CallbackEnvelope.decode(payload.get("Body"))
    if envelope is None or envelope.stk_callback is None:
        return parsed

    callback = envelope.stk_callback
    parsed.result_code = callback.result_code
    parsed.result_desc = callback.result_desc
    parsed.merchant_request_id = callback.merchant_request_id
    parsed.checkout_request_id = callback.checkout_request_id
    if callback.metadata is not None:
        parsed.items = dict(callback.metadata.items)
    return parsed
