from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .payments import ParsedCallback


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IntegrationEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


DEFAULT_PAYMENT_METHOD = "MPESA_STK_PUSH"


# ---------------------------------------------------------------------------
# Shared data models
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CreatePaymentInput:
    phone_number: str
    amount: int
    account_reference: str
    transaction_description: str
    payment_method: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class Payment:
    id: str
    amount: int
    phone_number: str
    account_reference: str
    transaction_description: str
    payment_method: str = DEFAULT_PAYMENT_METHOD
    status: PaymentStatus = PaymentStatus.PENDING
    user_id: Optional[str] = None
    notes: Optional[str] = None
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    confirmed_phone_number: Optional[str] = None
    failure_reason: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None
    gateway_callback: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


# ---------------------------------------------------------------------------
# Gateway interface
# ---------------------------------------------------------------------------

class PaymentGateway(ABC):
    """
    Contract every STK push gateway client must fulfil.
    Implemented by the real Daraja client and the mock client.
    """

    @abstractmethod
    async def authenticate(self) -> str:
        """Return a valid bearer token, exchanging credentials when needed."""

    @abstractmethod
    async def initiate_stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        transaction_description: str,
    ) -> Dict[str, Any]:
        """Submit a push request and return the raw gateway response."""

    @abstractmethod
    async def query_stk_push_status(self, checkout_request_id: str) -> Dict[str, Any]:
        """Query a previously submitted push request."""

    @abstractmethod
    def parse_callback(self, payload: Any) -> "ParsedCallback":
        """Decode an inbound callback payload."""
