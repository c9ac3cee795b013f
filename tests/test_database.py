"""Tests for database models and repository layer."""

import pytest
from sqlalchemy.exc import IntegrityError

from card_gate.database import (
    Base,
    CreditTransactionRepository,
    InvoiceRepository,
    InvoiceStatus,
    WalletRepository,
    close_db,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
    get_db_context,
    init_db,
)


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


async def make_invoice(session, payment_id="payment_42_1", **overrides):
    data = {
        "user_id": "42",
        "payment_id": payment_id,
        "amount": 999,
        "currency": "eur",
        "credits_amount": 100,
    }
    data.update(overrides)
    return await InvoiceRepository(session).create(**data)


class TestInvoiceRepository:
    """Tests for InvoiceRepository."""

    async def test_create(self, db_session):
        invoice = await make_invoice(db_session)
        assert invoice.id is not None
        assert invoice.status == InvoiceStatus.PENDING.value
        assert invoice.currency == "EUR"
        assert invoice.created_at is not None

    async def test_payment_id_unique(self, db_session):
        await make_invoice(db_session)
        with pytest.raises(IntegrityError):
            await make_invoice(db_session)

    async def test_get_by_payment_id(self, db_session):
        created = await make_invoice(db_session)
        repo = InvoiceRepository(db_session)
        assert (await repo.get_by_payment_id("payment_42_1")).id == created.id
        assert await repo.get_by_payment_id("payment_other") is None

    async def test_three_ds_data_round_trip(self, db_session):
        repo = InvoiceRepository(db_session)
        invoice = await make_invoice(db_session)
        await repo.set_three_ds_data(invoice, {"challenge": {"kind": "basic", "acs_url": "https://acs"}})
        fetched = await repo.get_by_payment_id("payment_42_1")
        assert fetched.three_ds_data["challenge"]["acs_url"] == "https://acs"

    async def test_mark_paid_clears_three_ds_data(self, db_session):
        repo = InvoiceRepository(db_session)
        invoice = await make_invoice(db_session)
        await repo.set_three_ds_data(invoice, {"fingerprint_complete": True})
        await repo.mark_paid(invoice)
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.paid_at is not None
        assert invoice.three_ds_data is None

    async def test_mark_failed(self, db_session):
        repo = InvoiceRepository(db_session)
        invoice = await repo.mark_failed(await make_invoice(db_session), "Do not honor")
        assert invoice.status == InvoiceStatus.FAILED.value
        assert invoice.to_dict()["status_message"] == "Do not honor"

    async def test_paid_never_marked_failed(self, db_session):
        repo = InvoiceRepository(db_session)
        invoice = await repo.mark_paid(await make_invoice(db_session))
        await repo.mark_failed(invoice, "late decline")
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.status_message is None

    async def test_mark_error(self, db_session):
        repo = InvoiceRepository(db_session)
        invoice = await repo.mark_error(await make_invoice(db_session), "Card is not supported")
        assert invoice.status == InvoiceStatus.ERROR.value
        assert invoice.status_message == "Card is not supported"

    async def test_mark_error_only_from_pending(self, db_session):
        repo = InvoiceRepository(db_session)
        invoice = await repo.mark_failed(await make_invoice(db_session), "Do not honor")
        await repo.mark_error(invoice, "late error")
        assert invoice.status == InvoiceStatus.FAILED.value
        assert invoice.status_message == "Do not honor"


class TestWalletAndLedger:
    """Tests for wallets and the credits ledger."""

    async def test_get_or_create(self, db_session):
        repo = WalletRepository(db_session)
        wallet = await repo.get_or_create("42")
        assert wallet.balance == 0
        assert (await repo.get_or_create("42")).id == wallet.id

    async def test_credit_updates_balance(self, db_session):
        invoice = await make_invoice(db_session)
        wallet = await WalletRepository(db_session).get_or_create("42")
        entry = await CreditTransactionRepository(db_session).credit(
            wallet, "payment_42_1", 100, invoice_id=invoice.id, description="Purchased 100 credits",
        )
        assert wallet.balance == 100
        assert entry.balance == 100
        assert entry.to_dict()["payment_id"] == "payment_42_1"

    async def test_one_ledger_entry_per_payment(self, db_session):
        wallet = await WalletRepository(db_session).get_or_create("42")
        repo = CreditTransactionRepository(db_session)
        await repo.credit(wallet, "payment_42_1", 100)
        with pytest.raises(IntegrityError):
            await repo.credit(wallet, "payment_42_1", 100)


class TestSession:
    """Tests for engine and session helpers."""

    @pytest.mark.parametrize("raw,expected", [
        ("postgresql://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("postgres://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ])
    def test_database_url_rewrite(self, monkeypatch, raw, expected):
        monkeypatch.setenv("DATABASE_URL", raw)
        assert get_database_url() == expected

    def test_default_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert get_database_url().startswith("sqlite+aiosqlite:///")

    def test_uninitialized_factory(self):
        with pytest.raises(RuntimeError):
            get_async_session_factory()

    async def test_db_context_commits(self):
        await init_db("sqlite+aiosqlite:///:memory:")
        try:
            async with get_db_context() as db:
                await make_invoice(db)
            async with get_db_context() as db:
                assert await InvoiceRepository(db).get_by_payment_id("payment_42_1") is not None
        finally:
            await close_db()

    async def test_db_context_rolls_back(self):
        await init_db("sqlite+aiosqlite:///:memory:")
        try:
            with pytest.raises(ValueError):
                async with get_db_context() as db:
                    await make_invoice(db)
                    raise ValueError("boom")
            async with get_db_context() as db:
                assert await InvoiceRepository(db).get_by_payment_id("payment_42_1") is None
        finally:
            await close_db()
