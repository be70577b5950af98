"""
SQLAlchemy models for payments.
Used by payment_store_sql when DATABASE_URL is set.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.integrations.contracts.interfaces import DEFAULT_PAYMENT_METHOD, PaymentStatus, utcnow


class Base(DeclarativeBase):
    pass


class PaymentRecord(Base):
    __tablename__ = "payments"

    # Surrogate key; also orders rows created in the same instant.
    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    account_reference: Mapped[str] = mapped_column(String(12), nullable=False)
    transaction_description: Mapped[str] = mapped_column(String(13), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), default=DEFAULT_PAYMENT_METHOD, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    transaction_date: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    confirmed_phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    gateway_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    gateway_callback: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
