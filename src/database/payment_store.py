"""
In-memory payment store for local development and tests.

`PaymentStore` is the storage interface the payment service depends on;
`InMemoryPaymentStore` keeps records in a process-local dict and loses them on
restart. The SQLAlchemy implementation lives in `payment_store_sql`.
"""

from __future__ import annotations

import itertools
import uuid
from abc import ABC, abstractmethod
from copy import deepcopy
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from src.integrations.contracts.interfaces import Payment, PaymentStatus, utcnow

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100

# Fields the store owns; callers cannot set them through create/update.
_PROTECTED_FIELDS = frozenset({"id", "created_at", "updated_at"})


def new_payment_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


def clamp_page(page: Optional[int]) -> int:
    return max(1, page or 1)


def clamp_per_page(per_page: Optional[int]) -> int:
    return min(MAX_PER_PAGE, max(1, per_page or DEFAULT_PER_PAGE))


class PaymentStore(ABC):
    """Keyed collection of Payment records. No business rules live here."""

    @abstractmethod
    def create(self, data: Dict[str, Any]) -> Payment:
        """Assign id and timestamps, insert and return the record."""

    @abstractmethod
    def update(self, payment_id: str, **fields: Any) -> Optional[Payment]:
        """Merge fields into a record; None when the id is unknown."""

    @abstractmethod
    def find_by_id(self, payment_id: str) -> Optional[Payment]:
        ...

    @abstractmethod
    def find_by_checkout_request_id(self, checkout_request_id: str) -> Optional[Payment]:
        ...

    @abstractmethod
    def find_by_merchant_request_id(self, merchant_request_id: str) -> Optional[Payment]:
        ...

    @abstractmethod
    def find_all(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> List[Payment]:
        """Newest-created first, page-sliced."""

    @abstractmethod
    def count(self, *, user_id: Optional[str] = None, status: Optional[PaymentStatus] = None) -> int:
        ...

    def create_tables(self) -> None:
        """
        No-op by default. Kept so the startup hook in `src/api/main.py` can call
        it on any store.
        """
        return None


class InMemoryPaymentStore(PaymentStore):
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._payments: Dict[str, Payment] = {}
        # Insertion order breaks ties between records created in the same instant.
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def create(self, data: Dict[str, Any]) -> Payment:
        now = self._clock()
        fields = {k: deepcopy(v) for k, v in data.items() if k not in _PROTECTED_FIELDS}
        payment = Payment(id=new_payment_id(), created_at=now, updated_at=now, **fields)
        self._payments[payment.id] = payment
        self._sequence[payment.id] = next(self._counter)
        return deepcopy(payment)

    def update(self, payment_id: str, **fields: Any) -> Optional[Payment]:
        existing = self._payments.get(payment_id)
        if existing is None:
            return None
        changes = {k: deepcopy(v) for k, v in fields.items() if k not in _PROTECTED_FIELDS}
        updated = replace(existing, **changes, updated_at=self._clock())
        self._payments[payment_id] = updated
        return deepcopy(updated)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def find_by_id(self, payment_id: str) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        return deepcopy(payment) if payment else None

    def find_by_checkout_request_id(self, checkout_request_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if payment.checkout_request_id == checkout_request_id:
                return deepcopy(payment)
        return None

    def find_by_merchant_request_id(self, merchant_request_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if payment.merchant_request_id == merchant_request_id:
                return deepcopy(payment)
        return None

    def find_all(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> List[Payment]:
        matches = self._filter(user_id, status)
        matches.sort(key=lambda p: (p.created_at, self._sequence[p.id]), reverse=True)
        page = clamp_page(page)
        per_page = clamp_per_page(per_page)
        skip = (page - 1) * per_page
        return [deepcopy(p) for p in matches[skip : skip + per_page]]

    def count(self, *, user_id: Optional[str] = None, status: Optional[PaymentStatus] = None) -> int:
        return len(self._filter(user_id, status))

    def _filter(self, user_id: Optional[str], status: Optional[PaymentStatus]) -> List[Payment]:
        payments = list(self._payments.values())
        if user_id:
            payments = [p for p in payments if p.user_id == user_id]
        if status:
            payments = [p for p in payments if p.status == status]
        return payments
