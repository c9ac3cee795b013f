"""SQLAlchemy models for purchase persistence."""

import uuid
import json
import enum
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import String, Integer, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class InvoiceStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    ERROR = "ERROR"


class CreditTransactionType(str, enum.Enum):
    CREDIT_PURCHASE = "CREDIT_PURCHASE"


class Invoice(Base):
    """One credits purchase, keyed by the gateway PaymentId."""
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    payment_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    credits_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=InvoiceStatus.PENDING.value)
    status_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Outstanding 3-D Secure challenge, stored as JSON
    three_ds_data_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_invoices_status", "status"),
    )

    @property
    def three_ds_data(self) -> Optional[Dict[str, Any]]:
        if self.three_ds_data_json:
            return json.loads(self.three_ds_data_json)
        return None

    @three_ds_data.setter
    def three_ds_data(self, value: Optional[Dict[str, Any]]) -> None:
        if value is not None:
            self.three_ds_data_json = json.dumps(value)
        else:
            self.three_ds_data_json = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert invoice to dictionary representation."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "payment_id": self.payment_id,
            "amount": self.amount,
            "currency": self.currency,
            "credits_amount": self.credits_amount,
            "status": self.status,
            "status_message": self.status_message,
            "three_ds_data": self.three_ds_data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


class Wallet(Base):
    """Credits balance of a user."""
    __tablename__ = "wallets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions: Mapped[List["CreditTransaction"]] = relationship(
        "CreditTransaction",
        back_populates="wallet",
        cascade="all, delete-orphan",
        order_by="CreditTransaction.created_at.desc()",
    )


class CreditTransaction(Base):
    """Ledger entry for credits added to a wallet.

    ``payment_id`` is unique, so a purchase can be credited at most once even
    if a callback and a status poll race each other.
    """
    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    wallet_id: Mapped[str] = mapped_column(String(36), ForeignKey("wallets.id"), nullable=False, index=True)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("invoices.id"), nullable=True)
    payment_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    # Wallet balance after this entry
    balance: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=CreditTransactionType.CREDIT_PURCHASE.value)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    wallet: Mapped["Wallet"] = relationship("Wallet", back_populates="transactions")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "invoice_id": self.invoice_id,
            "payment_id": self.payment_id,
            "amount": self.amount,
            "balance": self.balance,
            "type": self.type,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
