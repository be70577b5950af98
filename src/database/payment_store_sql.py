"""
SQL-backed payment store for deployments where DATABASE_URL is set.
Implements the same interface as src.database.payment_store (in-memory).
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.database.models import Base, PaymentRecord
from src.database.payment_store import (
    DEFAULT_PER_PAGE,
    PaymentStore,
    clamp_page,
    clamp_per_page,
    new_payment_id,
)
from src.integrations.contracts.interfaces import Payment, PaymentStatus, utcnow

_COLUMNS = [
    "id",
    "user_id",
    "amount",
    "phone_number",
    "account_reference",
    "transaction_description",
    "payment_method",
    "status",
    "notes",
    "merchant_request_id",
    "checkout_request_id",
    "mpesa_receipt_number",
    "transaction_date",
    "confirmed_phone_number",
    "failure_reason",
    "gateway_response",
    "gateway_callback",
    "created_at",
    "updated_at",
]


def _normalize_connection_string(s: str) -> str:
    """Strip common mistakes: 'psql \'...\'', extra quotes, whitespace."""
    s = s.strip()
    if re.match(r"^psql\s+", s, re.IGNORECASE):
        s = re.sub(r"^psql\s+", "", s, flags=re.IGNORECASE).strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        s = s[1:-1].strip()
    return s


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_payment(row: PaymentRecord) -> Payment:
    data = {name: getattr(row, name) for name in _COLUMNS}
    data["status"] = PaymentStatus(row.status)
    data["created_at"] = _aware(row.created_at)
    data["updated_at"] = _aware(row.updated_at)
    return Payment(**data)


def _to_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
    values = {k: v for k, v in fields.items() if k in _COLUMNS and k not in ("id", "created_at", "updated_at")}
    if isinstance(values.get("status"), PaymentStatus):
        values["status"] = values["status"].value
    return values


class SqlPaymentStore(PaymentStore):
    """
    Payment persistence using SQLAlchemy. Use when DATABASE_URL is set.
    """

    def __init__(self, connection_string: str, clock: Callable[[], datetime] = utcnow) -> None:
        connection_string = _normalize_connection_string(connection_string)
        if connection_string.startswith("sqlite"):
            self.engine = create_engine(
                connection_string,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(connection_string, pool_pre_ping=True, pool_size=5, max_overflow=10)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine, expire_on_commit=False)
        self._clock = clock

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        s = self.SessionLocal()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def create(self, data: Dict[str, Any]) -> Payment:
        now = self._clock()
        with self._session() as s:
            row = PaymentRecord(id=new_payment_id(), created_at=now, updated_at=now, **_to_columns(data))
            s.add(row)
            s.flush()
            s.refresh(row)
            return _to_payment(row)

    def update(self, payment_id: str, **fields: Any) -> Optional[Payment]:
        with self._session() as s:
            row = s.execute(select(PaymentRecord).where(PaymentRecord.id == payment_id)).scalar_one_or_none()
            if row is None:
                return None
            for key, value in _to_columns(fields).items():
                setattr(row, key, value)
            row.updated_at = self._clock()
            s.flush()
            s.refresh(row)
            return _to_payment(row)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def find_by_id(self, payment_id: str) -> Optional[Payment]:
        return self._find_one(PaymentRecord.id == payment_id)

    def find_by_checkout_request_id(self, checkout_request_id: str) -> Optional[Payment]:
        return self._find_one(PaymentRecord.checkout_request_id == checkout_request_id)

    def find_by_merchant_request_id(self, merchant_request_id: str) -> Optional[Payment]:
        return self._find_one(PaymentRecord.merchant_request_id == merchant_request_id)

    def find_all(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> List[Payment]:
        page = clamp_page(page)
        per_page = clamp_per_page(per_page)
        stmt = (
            self._filtered(select(PaymentRecord), user_id, status)
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.pk.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        with self._session() as s:
            return [_to_payment(row) for row in s.execute(stmt).scalars().all()]

    def count(self, *, user_id: Optional[str] = None, status: Optional[PaymentStatus] = None) -> int:
        stmt = self._filtered(select(func.count()).select_from(PaymentRecord), user_id, status)
        with self._session() as s:
            return int(s.execute(stmt).scalar_one())

    def _find_one(self, clause) -> Optional[Payment]:
        with self._session() as s:
            row = s.execute(select(PaymentRecord).where(clause).limit(1)).scalar_one_or_none()
            return _to_payment(row) if row else None

    @staticmethod
    def _filtered(stmt, user_id: Optional[str], status: Optional[PaymentStatus]):
        if user_id:
            stmt = stmt.where(PaymentRecord.user_id == user_id)
        if status:
            stmt = stmt.where(PaymentRecord.status == PaymentStatus(status).value)
        return stmt
