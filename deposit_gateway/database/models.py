"""SQLAlchemy database models for deposits and user balances."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class TransactionStatus(str, Enum):
    """Deposit lifecycle. Only PENDING may transition."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    DECLINED = "declined"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


TERMINAL_STATUSES = frozenset(s.value for s in TransactionStatus if s.is_terminal)


class ProcessingType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    User profile table.

    Holds the profile data used to complete customer details and the
    deposit balance. ``balance`` is only ever changed by an atomic
    increment from the balance ledger.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of User."""
        return f"<User(id={self.id}, balance={self.balance})>"


class Transaction(Base):
    """
    Deposit transactions table.

    One row per deposit attempt. ``external_id`` is the processor's ID,
    attached once after remote creation. ``customer`` is the snapshot sent
    to the processor and is never rewritten. ``credited_at`` is written in
    the same database transaction that moves the row to ``completed`` and
    credits the user.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    external_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="deposit")
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    customer: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    processing_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProcessingType.MANUAL.value
    )
    payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processor_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'declined', 'canceled')",
            name="valid_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_transactions_user_status", "user_id", "status"),
        Index("idx_transactions_status_created", "status", "created_at"),
        Index("idx_transactions_user_created", "user_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return {
            "id": self.id,
            "externalId": self.external_id,
            "userId": self.user_id,
            "type": self.type,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "description": self.description,
            "customer": self.customer,
            "processingType": self.processing_type,
            "paymentUrl": self.payment_url,
            "processingMessage": self.processing_message,
            "processorStatus": self.processor_status,
            "creditedAt": self.credited_at.isoformat() if self.credited_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, external_id={self.external_id}, "
            f"amount={self.amount}, status={self.status})>"
        )
