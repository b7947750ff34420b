"""Tests for the wallet ledger."""
from decimal import Decimal

import pytest

from bookstore.db import atomic
from bookstore.errors import (
    DuplicateReferenceError, InsufficientBalanceError, NotFoundError, TransientInfraError, ValidationError,
)
from bookstore.models import Category, Wallet, WalletTransaction
from bookstore.services.wallet import WalletLedger


@pytest.fixture
def wallet(db_session):
    ledger = WalletLedger(db_session)
    with atomic(db_session):
        wallet = ledger.get_or_create_wallet(1)
    return wallet


def test_credit_and_debit_update_balance(db_session, wallet):
    ledger = WalletLedger(db_session)

    with atomic(db_session):
        ledger.credit(wallet.id, Decimal("100"), "Top up", reference="TOPUP-1")
    with atomic(db_session):
        ledger.debit(wallet.id, Decimal("30.505"), "Purchase", reference="ORDER-1")

    assert ledger.balance(1) == Decimal("69.49")
    assert ledger.replay_balance(wallet.id) == Decimal("69.49")


def test_duplicate_reference_is_refused(db_session, wallet):
    ledger = WalletLedger(db_session)
    with atomic(db_session):
        ledger.credit(wallet.id, Decimal("50"), "Refund", reference="REFUND-ORDER-7")

    with pytest.raises(DuplicateReferenceError):
        with atomic(db_session):
            ledger.credit(wallet.id, Decimal("50"), "Refund", reference="REFUND-ORDER-7")

    assert ledger.balance(1) == Decimal("50.00")
    assert db_session.query(WalletTransaction).count() == 1


def test_debit_requires_balance(db_session, wallet):
    ledger = WalletLedger(db_session)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        with atomic(db_session):
            ledger.debit(wallet.id, Decimal("10"), "Purchase", reference="ORDER-2")

    assert exc_info.value.state == {"balance": "0.00", "required": "10.00"}
    assert db_session.query(WalletTransaction).count() == 0


def test_invalid_postings(db_session, wallet):
    ledger = WalletLedger(db_session)

    with pytest.raises(ValidationError):
        ledger.credit(wallet.id, Decimal("0"), "Nothing", reference="ZERO")
    with pytest.raises(ValidationError):
        ledger.credit(wallet.id, Decimal("-5"), "Negative", reference="NEG")
    with pytest.raises(ValidationError):
        ledger.credit(wallet.id, Decimal("5"), "No reference", reference="")
    with pytest.raises(NotFoundError):
        ledger.credit(9999, Decimal("5"), "Missing wallet", reference="MISSING")


def test_replay_matches_balance_after_mixed_sequence(db_session, wallet):
    ledger = WalletLedger(db_session)
    movements = [("credit", "120.10"), ("debit", "20.05"), ("credit", "0.95"), ("debit", "100"), ("credit", "3")]

    for i, (kind, amount) in enumerate(movements):
        with atomic(db_session):
            post = ledger.credit if kind == "credit" else ledger.debit
            post(wallet.id, Decimal(amount), kind, reference=f"MOVE-{i}")

    stored = db_session.query(Wallet).filter(Wallet.user_id == 1).one().balance
    assert stored == Decimal("4.00")
    assert ledger.replay_balance(wallet.id) == stored


def test_transactions_are_paginated_newest_first(db_session, wallet):
    ledger = WalletLedger(db_session)
    for i in range(12):
        with atomic(db_session):
            ledger.credit(wallet.id, Decimal("1"), f"Credit {i}", reference=f"R-{i}")

    first = ledger.transactions(1, page=1, limit=10)
    second = ledger.transactions(1, page=2, limit=10)

    assert first.total == 12
    assert first.pages == 2
    assert len(first.transactions) == 10
    assert first.transactions[0].reference == "R-11"
    assert [tx.reference for tx in second.transactions] == ["R-1", "R-0"]
    assert first.as_dict()["balance"] == "12.00"

    # Out-of-range limits fall back to the default page size
    assert ledger.transactions(1, limit=500).limit == 10


def test_balance_of_user_without_wallet(db_session):
    assert WalletLedger(db_session).balance(42) == 0


def test_atomic_turns_integrity_errors_into_transient_errors(db_session):
    db_session.add(Category(name="Duplicate"))
    db_session.commit()

    with pytest.raises(TransientInfraError):
        with atomic(db_session):
            db_session.add(Category(name="Duplicate"))
            db_session.flush()

    assert db_session.query(Category).count() == 1
