import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookstore.db import atomic
from bookstore.errors import DuplicateReferenceError, InsufficientBalanceError, NotFoundError, ValidationError
from bookstore.models import TransactionType, Wallet, WalletTransaction
from bookstore.money import D, ZERO, fmt, round_money, utcnow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50
DEFAULT_PAGE_SIZE = 10


@dataclass(frozen=True)
class TransactionPage:
    balance: Decimal
    transactions: list[WalletTransaction]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0

    def as_dict(self) -> dict:
        return {
            "balance": fmt(self.balance),
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "pages": self.pages,
            "transactions": [
                {
                    "id": tx.id,
                    "type": tx.type,
                    "amount": fmt(tx.amount),
                    "description": tx.description,
                    "order_id": tx.order_id,
                    "reference": tx.reference,
                    "status": tx.status,
                    "created_at": tx.created_at.isoformat() if tx.created_at else None,
                }
                for tx in self.transactions
            ],
        }


class WalletLedger:
    """Append-only wallet ledger.

    ``credit`` and ``debit`` never commit: they write inside the caller's
    transaction so the money movement lands together with the order change
    that caused it. Each ``reference`` can be posted once.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_or_create_wallet(self, user_id: int, lock: bool = False) -> Wallet:
        query = self.db.query(Wallet).filter(Wallet.user_id == user_id)
        if lock:
            query = query.with_for_update()
        wallet = query.first()
        if wallet is None:
            wallet = Wallet(user_id=user_id, balance=ZERO)
            self.db.add(wallet)
            self.db.flush()
            logger.info(f"Wallet {wallet.id} created for user {user_id}")
        return wallet

    def credit(self, wallet_id: int, amount, description: str, reference: str,
               order_id: Optional[int] = None) -> WalletTransaction:
        return self._post(wallet_id, TransactionType.CREDIT, amount, description, reference, order_id)

    def debit(self, wallet_id: int, amount, description: str, reference: str,
              order_id: Optional[int] = None) -> WalletTransaction:
        return self._post(wallet_id, TransactionType.DEBIT, amount, description, reference, order_id)

    def find_by_reference(self, reference: str) -> Optional[WalletTransaction]:
        return self.db.query(WalletTransaction).filter(WalletTransaction.reference == reference).first()

    def balance(self, user_id: int) -> Decimal:
        wallet = self.db.query(Wallet).filter(Wallet.user_id == user_id).first()
        return D(wallet.balance) if wallet else ZERO

    def transactions(self, user_id: int, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> TransactionPage:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            limit = DEFAULT_PAGE_SIZE
        page = max(page, 1)
        with atomic(self.db):
            wallet = self.get_or_create_wallet(user_id)
        query = self.db.query(WalletTransaction).filter(WalletTransaction.wallet_id == wallet.id)
        total = query.count()
        rows = (
            query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return TransactionPage(balance=D(wallet.balance), transactions=rows, page=page, limit=limit, total=total)

    def replay_balance(self, wallet_id: int) -> Decimal:
        """Sum of credits minus debits; always equals the stored balance."""
        rows = self.db.query(WalletTransaction).filter(WalletTransaction.wallet_id == wallet_id).all()
        total = ZERO
        for tx in rows:
            total += D(tx.amount) if tx.type == TransactionType.CREDIT else -D(tx.amount)
        return total

    def _post(self, wallet_id: int, type: str, amount, description: str, reference: str,
              order_id: Optional[int]) -> WalletTransaction:
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValidationError("Amount must be greater than 0", state={"amount": fmt(amount)})
        if not reference:
            raise ValidationError("Transaction reference is required")

        wallet = self.db.query(Wallet).filter(Wallet.id == wallet_id).with_for_update().first()
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found")

        if self.find_by_reference(reference):
            logger.error(f"Duplicate wallet reference {reference}, {type} of {amount} refused")
            raise DuplicateReferenceError("Transaction already recorded", state={"reference": reference})

        if type == TransactionType.DEBIT and D(wallet.balance) < amount:
            logger.error(f"Insufficient wallet balance for wallet {wallet_id}. "
                         f"Balance: {wallet.balance}, Required: {amount}")
            raise InsufficientBalanceError(
                "Insufficient wallet balance",
                state={"balance": fmt(wallet.balance), "required": fmt(amount)},
            )

        tx = WalletTransaction(wallet_id=wallet.id, amount=amount, type=type, description=description,
                               order_id=order_id, reference=reference, status="completed")
        self.db.add(tx)
        try:
            self.db.flush()
        except IntegrityError as e:
            # Lost a race on the unique reference
            raise DuplicateReferenceError("Transaction already recorded", state={"reference": reference}) from e

        if type == TransactionType.CREDIT:
            wallet.balance = D(wallet.balance) + amount
        else:
            wallet.balance = D(wallet.balance) - amount
        wallet.updated_at = utcnow()
        self.db.flush()
        logger.info(f"Wallet {wallet.id}: {type} {amount} ({reference}), balance now {wallet.balance}")
        return tx
