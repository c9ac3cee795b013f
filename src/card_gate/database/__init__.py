"""Persistence for invoices, wallets and credit transactions."""

from .models import (
    Base,
    Invoice,
    InvoiceStatus,
    Wallet,
    CreditTransaction,
    CreditTransactionType,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    get_db_context,
)
from .repository import (
    InvoiceRepository,
    WalletRepository,
    CreditTransactionRepository,
)

__all__ = [
    # Models
    "Base",
    "Invoice",
    "InvoiceStatus",
    "Wallet",
    "CreditTransaction",
    "CreditTransactionType",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "get_db_context",
    # Repositories
    "InvoiceRepository",
    "WalletRepository",
    "CreditTransactionRepository",
]
