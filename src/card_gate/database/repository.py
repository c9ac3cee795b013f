"""Repository layer for purchase persistence operations."""

import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Invoice,
    InvoiceStatus,
    Wallet,
    CreditTransaction,
    CreditTransactionType,
)

logger = logging.getLogger(__name__)


class InvoiceRepository:
    """Repository for Invoice CRUD operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        user_id: str,
        payment_id: str,
        amount: int,
        currency: str,
        credits_amount: int,
    ) -> Invoice:
        """Create a pending invoice for a purchase attempt.

        Args:
            user_id: Purchasing user.
            payment_id: Gateway correlation key.
            amount: Amount in minor units.
            currency: Three-letter currency code.
            credits_amount: Credits granted once paid.

        Returns:
            Created Invoice instance.
        """
        invoice = Invoice(
            user_id=user_id,
            payment_id=payment_id,
            amount=amount,
            currency=currency.upper(),
            credits_amount=credits_amount,
            status=InvoiceStatus.PENDING.value,
        )
        self.session.add(invoice)
        await self.session.flush()

        logger.info(f"Created invoice {invoice.id} for payment {payment_id}")
        return invoice

    async def get_by_payment_id(self, payment_id: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.payment_id == payment_id)
        )
        return result.scalar_one_or_none()

    async def set_three_ds_data(self, invoice: Invoice, data: Optional[Dict[str, Any]]) -> Invoice:
        invoice.three_ds_data = data
        invoice.updated_at = datetime.utcnow()
        await self.session.flush()
        return invoice

    async def mark_paid(self, invoice: Invoice) -> Invoice:
        invoice.status = InvoiceStatus.PAID.value
        invoice.status_message = None
        invoice.paid_at = datetime.utcnow()
        invoice.three_ds_data = None
        await self.session.flush()
        logger.info(f"Invoice {invoice.id} marked PAID")
        return invoice

    async def mark_failed(self, invoice: Invoice, message: Optional[str] = None) -> Invoice:
        """Mark an invoice FAILED. A PAID invoice is never downgraded."""
        if invoice.status == InvoiceStatus.PAID.value:
            logger.warning(f"Refusing to mark paid invoice {invoice.id} as failed")
            return invoice
        invoice.status = InvoiceStatus.FAILED.value
        invoice.status_message = message
        invoice.three_ds_data = None
        await self.session.flush()
        logger.info(f"Invoice {invoice.id} marked FAILED: {message}")
        return invoice

    async def mark_error(self, invoice: Invoice, message: Optional[str] = None) -> Invoice:
        """Mark an invoice the processor rejected outright. Only PENDING invoices change."""
        if invoice.status != InvoiceStatus.PENDING.value:
            logger.warning(f"Refusing to mark {invoice.status} invoice {invoice.id} as errored")
            return invoice
        invoice.status = InvoiceStatus.ERROR.value
        invoice.status_message = message
        invoice.three_ds_data = None
        await self.session.flush()
        logger.info(f"Invoice {invoice.id} marked ERROR: {message}")
        return invoice


class WalletRepository:
    """Repository for Wallet operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_user_id(self, user_id: str) -> Optional[Wallet]:
        result = await self.session.execute(
            select(Wallet).where(Wallet.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str) -> Wallet:
        """Get the user's wallet, creating an empty one on first use."""
        wallet = await self.get_by_user_id(user_id)
        if wallet is None:
            wallet = Wallet(user_id=user_id, balance=0)
            self.session.add(wallet)
            await self.session.flush()
            logger.info(f"Created wallet {wallet.id} for user {user_id}")
        return wallet


class CreditTransactionRepository:
    """Repository for the credits ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_payment_id(self, payment_id: str) -> Optional[CreditTransaction]:
        result = await self.session.execute(
            select(CreditTransaction).where(CreditTransaction.payment_id == payment_id)
        )
        return result.scalar_one_or_none()

    async def credit(
        self,
        wallet: Wallet,
        payment_id: str,
        amount: int,
        invoice_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        """Add credits to a wallet and record the ledger entry.

        Args:
            wallet: Wallet to credit.
            payment_id: Purchase being credited; unique across the ledger.
            amount: Number of credits.
            invoice_id: Optional invoice the credits were bought with.
            description: Optional human readable note.

        Returns:
            Created CreditTransaction instance.
        """
        wallet.balance = wallet.balance + amount
        wallet.updated_at = datetime.utcnow()

        entry = CreditTransaction(
            wallet_id=wallet.id,
            invoice_id=invoice_id,
            payment_id=payment_id,
            amount=amount,
            balance=wallet.balance,
            type=CreditTransactionType.CREDIT_PURCHASE.value,
            description=description,
        )
        self.session.add(entry)
        await self.session.flush()

        logger.info(f"Credited {amount} to wallet {wallet.id} for payment {payment_id}")
        return entry
