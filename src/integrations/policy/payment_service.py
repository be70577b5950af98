"""
Payment lifecycle service.

Owns the payment state machine: creates records, drives them through the
gateway, and reconciles query and callback results into the store. The gateway
client never writes to the store; every transition goes through `_apply`.

Mutations of one payment are serialized with a per-payment asyncio.Lock. Gateway
I/O happens outside the lock and each locked section re-reads the record before
writing, so a query racing a callback always works on the latest state.
"""

from __future__ import annotations

import asyncio
import logging
import math
import weakref
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from src.database.payment_store import PaymentStore, clamp_page, clamp_per_page
from src.error_handler import GatewayError, NotFoundError, ValidationError
from src.integrations.contracts.interfaces import (
    DEFAULT_PAYMENT_METHOD,
    CreatePaymentInput,
    Payment,
    PaymentGateway,
    PaymentStatus,
)
from src.integrations.contracts.payments import (
    can_transition,
    is_success_code,
    normalize_phone_number,
    truncate_account_reference,
    truncate_transaction_description,
)

logger = logging.getLogger(__name__)

_CORRELATION_FIELDS = (
    ("MerchantRequestID", "merchant_request_id"),
    ("CheckoutRequestID", "checkout_request_id"),
)


@dataclass
class PaymentPage:
    data: List[Payment] = field(default_factory=list)
    total: int = 0
    page: int = 1
    per_page: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.per_page)

    def meta(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "page": self.page,
            "perPage": self.per_page,
            "totalPages": self.total_pages,
        }


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_status(value: Union[str, PaymentStatus, None]) -> Optional[PaymentStatus]:
    if not value:
        return None
    try:
        return PaymentStatus(value)
    except ValueError:
        return None


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _confirmed_amount(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, int):
        return value
    return None


class PaymentService:
    def __init__(self, store: PaymentStore, gateway: PaymentGateway) -> None:
        self._store = store
        self._gateway = gateway
        # Entries live only while a task holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway

    def _lock_for(self, payment_id: str) -> asyncio.Lock:
        return self._locks.setdefault(payment_id, asyncio.Lock())

    def _require(self, payment_id: str) -> Payment:
        payment = self._store.find_by_id(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def _apply(
        self,
        payment: Payment,
        *,
        audit: Optional[Dict[str, Any]] = None,
        target: Optional[PaymentStatus] = None,
        outcome: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Write audit fields unconditionally; write the status and its outcome
        fields only when the state machine allows the transition.
        """
        changes: Dict[str, Any] = dict(audit or {})
        if target is not None:
            if can_transition(payment.status, target):
                changes["status"] = target
                changes.update(outcome or {})
                logger.info("[Payment] %s: %s -> %s", payment.id, payment.status.value, target.value)
            else:
                logger.warning(
                    "[Payment] Ignoring transition %s -> %s for payment %s",
                    payment.status.value, target.value, payment.id,
                )
        updated = self._store.update(payment.id, **changes)
        if updated is None:
            raise NotFoundError(f"Payment {payment.id} not found")
        return updated

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_payment(self, data: CreatePaymentInput, user_id: Optional[str] = None) -> Payment:
        phone = normalize_phone_number(data.phone_number)
        reference = truncate_account_reference(data.account_reference)
        description = truncate_transaction_description(data.transaction_description)

        payment = self._store.create({
            "user_id": user_id,
            "amount": data.amount,
            "phone_number": phone,
            "account_reference": reference,
            "transaction_description": description,
            "payment_method": data.payment_method or DEFAULT_PAYMENT_METHOD,
            "status": PaymentStatus.PENDING,
            "notes": data.notes,
        })
        logger.info("[Payment] Creating payment %s for %s", payment.id, phone)

        try:
            response = await self._gateway.initiate_stk_push(phone, data.amount, reference, description)
        except Exception as e:
            await self._fail_submission(payment.id, str(e) or "Unknown error during STK Push")
            logger.error("[Payment] Failed to initiate STK Push for %s: %s", payment.id, e)
            raise

        async with self._lock_for(payment.id):
            current = self._require(payment.id)
            audit: Dict[str, Any] = {"gateway_response": response}
            try:
                audit.update(self._correlation_updates(current, response))
            except GatewayError as e:
                self._apply(current, audit=audit, target=PaymentStatus.FAILED, outcome={"failure_reason": str(e)})
                raise

            if is_success_code(response.get("ResponseCode")):
                logger.info("[Payment] STK Push initiated for payment %s", payment.id)
                return self._apply(current, audit=audit, target=PaymentStatus.PROCESSING)

            reason = next(
                (v for v in (response.get("ResponseDescription"), response.get("CustomerMessage")) if isinstance(v, str)),
                "STK Push request rejected by Daraja",
            )
            logger.warning("[Payment] STK Push rejected for %s: %s", payment.id, reason)
            return self._apply(current, audit=audit, target=PaymentStatus.FAILED, outcome={"failure_reason": reason})

    async def _fail_submission(self, payment_id: str, reason: str) -> None:
        async with self._lock_for(payment_id):
            current = self._require(payment_id)
            self._apply(current, target=PaymentStatus.FAILED, outcome={"failure_reason": reason})

    def _correlation_updates(self, payment: Payment, response: Dict[str, Any]) -> Dict[str, str]:
        """Correlation ids are written once and must not collide with another payment's."""
        updates: Dict[str, str] = {}
        for response_key, attr in _CORRELATION_FIELDS:
            value = response.get(response_key)
            if not isinstance(value, str) or not value:
                continue
            existing = getattr(payment, attr)
            if existing is not None:
                if existing != value:
                    logger.warning("[Payment] Keeping %s=%s for %s; gateway sent %s", attr, existing, payment.id, value)
                continue
            finder = (
                self._store.find_by_merchant_request_id
                if attr == "merchant_request_id"
                else self._store.find_by_checkout_request_id
            )
            owner = finder(value)
            if owner is not None and owner.id != payment.id:
                raise GatewayError(f"Gateway returned {response_key} {value} already used by payment {owner.id}")
            updates[attr] = value
        return updates

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query_payment_status(self, checkout_request_id: str) -> Payment:
        payment = self._store.find_by_checkout_request_id(checkout_request_id) if checkout_request_id else None
        if payment is None:
            raise NotFoundError(f"Payment with checkout request ID {checkout_request_id} not found")

        logger.info("[Payment] Querying status for payment %s", payment.id)
        response = await self._gateway.query_stk_push_status(checkout_request_id)

        async with self._lock_for(payment.id):
            current = self._require(payment.id)
            audit: Dict[str, Any] = {
                "gateway_response": {**(current.gateway_response or {}), "queryResponse": response},
            }
            # The query is advisory: it may record a failure reason but never moves the status.
            if not is_success_code(response.get("ResultCode")):
                description = next(
                    (v for v in (response.get("ResultDesc"), response.get("errorMessage")) if isinstance(v, str)),
                    "Unknown error",
                )
                if current.status != PaymentStatus.COMPLETED:
                    audit["failure_reason"] = description
                logger.warning("[Payment] Query failed for %s: %s", current.id, description)
            else:
                logger.info("[Payment] Query successful for %s", current.id)
            return self._apply(current, audit=audit)

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def handle_callback(self, payload: Any) -> Payment:
        parsed = self._gateway.parse_callback(payload)
        merchant_id = parsed.merchant_request_id
        checkout_id = parsed.checkout_request_id
        if not merchant_id and not checkout_id:
            raise ValidationError("Callback missing merchantRequestId or checkoutRequestId")

        payment = self._store.find_by_merchant_request_id(merchant_id) if merchant_id else None
        if payment is None and checkout_id:
            payment = self._store.find_by_checkout_request_id(checkout_id)
        if payment is None:
            logger.warning("[Payment] Callback for unknown payment (duplicate or foreign?): %s", merchant_id or checkout_id)
            raise NotFoundError("Payment not found for callback")

        logger.info("[Payment] Processing callback for payment %s", payment.id)
        async with self._lock_for(payment.id):
            current = self._require(payment.id)
            audit = {"gateway_callback": parsed.raw}

            if parsed.is_success:
                outcome: Dict[str, Any] = {"failure_reason": None}
                outcome.update(self._metadata_outcome(current, parsed.items))
                return self._apply(current, audit=audit, target=PaymentStatus.COMPLETED, outcome=outcome)

            reason = parsed.result_desc or "Payment failed"
            logger.warning("[Payment] Payment %s failed: %s", current.id, reason)
            return self._apply(current, audit=audit, target=PaymentStatus.FAILED, outcome={"failure_reason": reason})

    def _metadata_outcome(self, payment: Payment, items: Dict[str, Any]) -> Dict[str, Any]:
        outcome: Dict[str, Any] = {}
        if "MpesaReceiptNumber" in items:
            outcome["mpesa_receipt_number"] = _text(items["MpesaReceiptNumber"])
        if "TransactionDate" in items:
            outcome["transaction_date"] = _text(items["TransactionDate"])
        if "PhoneNumber" in items:
            outcome["confirmed_phone_number"] = _text(items["PhoneNumber"])
        if "Amount" in items:
            amount = _confirmed_amount(items["Amount"])
            if amount is None:
                logger.warning("[Payment] Ignoring unparsable callback amount %r for %s", items["Amount"], payment.id)
            else:
                # TODO: add a reconciliation-mismatch error path instead of accepting the gateway amount.
                if amount != payment.amount:
                    logger.warning("[Payment] Gateway amount %s differs from requested %s for %s",
                                   amount, payment.amount, payment.id)
                outcome["amount"] = amount
        return outcome

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_payment_by_id(self, payment_id: str) -> Optional[Payment]:
        return self._store.find_by_id(payment_id)

    def find_all_payments(
        self,
        *,
        page: Any = None,
        per_page: Any = None,
        user_id: Optional[str] = None,
        status: Union[str, PaymentStatus, None] = None,
    ) -> PaymentPage:
        page_number = clamp_page(_coerce_int(page))
        page_size = clamp_per_page(_coerce_int(per_page))
        status_filter = _coerce_status(status)
        user_filter = user_id or None

        data = self._store.find_all(user_id=user_filter, status=status_filter, page=page_number, per_page=page_size)
        total = self._store.count(user_id=user_filter, status=status_filter)
        return PaymentPage(data=data, total=total, page=page_number, per_page=page_size)
