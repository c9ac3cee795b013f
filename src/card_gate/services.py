"""Purchase service that ties gateway outcomes to invoices and wallets."""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .callbacks import callback_response
from .connectors.base import CallbackData, PaymentRequest, PaymentStatus
from .database import (
    Invoice,
    InvoiceStatus,
    InvoiceRepository,
    WalletRepository,
    CreditTransactionRepository,
)

logger = logging.getLogger(__name__)


class PurchaseService:
    """Service class for credits purchases with persistence.

    Crediting is idempotent per PaymentId: a callback, a status poll and a
    3DS completion may all report the same success, and the wallet is
    credited exactly once.
    """

    def __init__(self, session: AsyncSession):
        """Initialize the service with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session
        self.invoice_repo = InvoiceRepository(session)
        self.wallet_repo = WalletRepository(session)
        self.credit_repo = CreditTransactionRepository(session)

    async def create_invoice(self, request: PaymentRequest, payment_id: str) -> Invoice:
        return await self.invoice_repo.create(
            user_id=request.user_id,
            payment_id=payment_id,
            amount=request.amount,
            currency=request.currency,
            credits_amount=request.credits,
        )

    async def get_invoice(self, payment_id: str) -> Optional[Invoice]:
        return await self.invoice_repo.get_by_payment_id(payment_id)

    async def record_challenge(self, payment_id: str, challenge) -> Optional[Invoice]:
        """Store the outstanding 3DS challenge on the invoice."""
        invoice = await self.invoice_repo.get_by_payment_id(payment_id)
        if invoice is None or invoice.status != InvoiceStatus.PENDING.value:
            return invoice
        data: Dict[str, Any] = dict(invoice.three_ds_data or {})
        data["challenge"] = challenge.model_dump()
        return await self.invoice_repo.set_three_ds_data(invoice, data)

    async def mark_fingerprint_complete(self, payment_id: str) -> Optional[Invoice]:
        """Record that the hidden fingerprinting iframe reported back."""
        invoice = await self.invoice_repo.get_by_payment_id(payment_id)
        if invoice is None:
            logger.warning(f"Fingerprint notification for unknown payment {payment_id}")
            return None
        data: Dict[str, Any] = dict(invoice.three_ds_data or {})
        data["fingerprint_complete"] = True
        data["fingerprint_completed_at"] = datetime.utcnow().isoformat()
        logger.info(f"Fingerprinting complete for payment {payment_id}")
        return await self.invoice_repo.set_three_ds_data(invoice, data)

    async def apply_outcome(
        self,
        payment_id: str,
        status: Union[PaymentStatus, str],
        message: Optional[str] = None,
    ) -> Optional[Invoice]:
        """Apply a payment outcome to the invoice and wallet.

        Success credits the wallet once; decline marks the invoice FAILED.
        Anything else leaves the invoice untouched.

        Args:
            payment_id: Purchase attempt.
            status: Outcome reported by the gateway, a poll or a callback.
            message: Optional processor message kept on failed invoices.

        Returns:
            The invoice, or None if no invoice exists for the PaymentId.
        """
        invoice = await self.invoice_repo.get_by_payment_id(payment_id)
        if invoice is None:
            logger.warning(f"No invoice for payment {payment_id}; ignoring {status}")
            return None

        status = PaymentStatus(status)
        if status == PaymentStatus.SUCCESS:
            return await self._credit(invoice)
        if status == PaymentStatus.DECLINE:
            return await self.invoice_repo.mark_failed(invoice, message or "Payment declined")
        return invoice

    async def reject_invoice(self, payment_id: str, message: Optional[str] = None) -> Optional[Invoice]:
        """Mark an attempt the processor rejected outright as ERROR."""
        invoice = await self.invoice_repo.get_by_payment_id(payment_id)
        if invoice is None:
            return None
        return await self.invoice_repo.mark_error(invoice, message)

    async def _credit(self, invoice: Invoice) -> Invoice:
        if invoice.status == InvoiceStatus.PAID.value:
            logger.info(f"Payment {invoice.payment_id} already credited")
            return invoice
        if invoice.status in (InvoiceStatus.FAILED.value, InvoiceStatus.ERROR.value):
            logger.error(f"Success reported for {invoice.status.lower()} invoice {invoice.id} (payment {invoice.payment_id}); not crediting")
            return invoice

        existing = await self.credit_repo.get_by_payment_id(invoice.payment_id)
        if existing is not None:
            logger.info(f"Payment {invoice.payment_id} already has credit transaction {existing.id}")
            return await self.invoice_repo.mark_paid(invoice)

        wallet = await self.wallet_repo.get_or_create(invoice.user_id)
        try:
            await self.credit_repo.credit(
                wallet,
                payment_id=invoice.payment_id,
                amount=invoice.credits_amount,
                invoice_id=invoice.id,
                description=f"Purchased {invoice.credits_amount} credits",
            )
        except IntegrityError:
            # a concurrent session credited this payment first
            await self.session.rollback()
            logger.warning(f"Payment {invoice.payment_id} was credited concurrently")
            return await self.invoice_repo.get_by_payment_id(invoice.payment_id)
        return await self.invoice_repo.mark_paid(invoice)

    async def handle_callback(self, callback: CallbackData) -> Optional[Invoice]:
        """Apply a verified processor callback."""
        payment_id = callback.payment_id
        if not payment_id:
            logger.warning("Verified callback carries no payment id")
            return None
        response = callback_response(callback)
        logger.info(f"Callback for payment {payment_id}: {response.status.value}")
        if response.status == PaymentStatus.THREE_DS_REQUIRED:
            return await self.record_challenge(payment_id, response.challenge)
        return await self.apply_outcome(payment_id, response.status, response.message)

    async def get_balance(self, user_id: str) -> int:
        wallet = await self.wallet_repo.get_by_user_id(user_id)
        return wallet.balance if wallet else 0
