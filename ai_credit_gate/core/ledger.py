"""
Credit ledger.

Authoritative balance bookkeeping with an append-only transaction history.

Every mutation runs inside one ``BEGIN IMMEDIATE`` SQLite transaction that
reads the balance, writes the new balance and appends the transaction row.
SQLite allows a single writer at a time, so two concurrent debits against
the same account can never both observe the pre-debit balance.
"""

import math
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional

import structlog

from ai_credit_gate.storage.db import DEFAULT_DB_PATH, get_connection
from ai_credit_gate.storage.models import (
    CREDIT_CATEGORIES,
    Role,
    Transaction,
    TransactionCategory,
)
from ai_credit_gate.storage.repository import new_id
from .errors import InvalidInputError, NotFoundError
from .pricing import format_credits, to_credits

logger = structlog.get_logger()


@dataclass(frozen=True)
class Balance:
    """Effective balance of an account."""
    amount: Decimal
    unlimited: bool = False

    @property
    def display(self) -> str:
        return format_credits(self.amount, self.unlimited)

    def covers(self, amount: Decimal) -> bool:
        return self.unlimited or self.amount >= amount


@dataclass(frozen=True)
class DebitResult:
    """Outcome of ``try_debit``. ``balance`` is the remaining balance."""
    ok: bool
    balance: Balance
    transaction: Optional[Transaction] = None


@dataclass(frozen=True)
class CreditResult:
    ok: bool
    new_total: Decimal
    transaction: Transaction


@dataclass(frozen=True)
class AdjustmentResult:
    previous_balance: Decimal
    new_balance: Decimal
    transaction: Transaction


@dataclass(frozen=True)
class TransactionPage:
    """One page of transaction history, newest first."""
    transactions: List[Transaction]
    page: int
    page_size: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_items / self.page_size) if self.total_items else 0

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total_items

    @property
    def has_prev(self) -> bool:
        return self.page > 1


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        account_id=row["account_id"],
        amount=Decimal(row["amount"]),
        balance=Decimal(row["balance"]),
        description=row["description"],
        category=TransactionCategory(row["category"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _positive_amount(amount) -> Decimal:
    value = to_credits(amount)
    if value <= 0:
        raise InvalidInputError(f"Amount must be > 0, got {value}")
    return value


class CreditLedger:
    """Reads and atomically mutates per-account credit balances."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the ledger with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _unit_of_work(self) -> Iterator[sqlite3.Connection]:
        """Serialized read-modify-write-append unit."""
        conn = get_connection(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _load_account(conn: sqlite3.Connection, account_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT id, role, balance FROM account WHERE id = ?", (account_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return row

    @staticmethod
    def _write(
        conn: sqlite3.Connection,
        account_id: str,
        amount: Decimal,
        new_balance: Decimal,
        description: str,
        category: TransactionCategory,
    ) -> Transaction:
        transaction = Transaction(
            id=new_id(),
            account_id=account_id,
            amount=amount,
            balance=new_balance,
            description=description,
            category=category,
            created_at=datetime.now(),
        )
        conn.execute(
            "UPDATE account SET balance = ? WHERE id = ?",
            (str(new_balance), account_id),
        )
        conn.execute("""
            INSERT INTO credit_transaction
            (id, account_id, amount, balance, description, category, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            transaction.id,
            transaction.account_id,
            str(transaction.amount),
            str(transaction.balance),
            transaction.description,
            transaction.category.value,
            transaction.created_at.isoformat(),
        ))
        return transaction

    def get_balance(self, account_id: str) -> Balance:
        """Effective balance; admins are unlimited whatever is stored.

        Raises:
            NotFoundError: If the account does not exist
        """
        conn = get_connection(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            row = self._load_account(conn, account_id)
        finally:
            conn.close()
        if Role(row["role"]) is Role.ADMIN:
            return Balance(Decimal(row["balance"]), unlimited=True)
        return Balance(Decimal(row["balance"]))

    def try_debit(self, account_id: str, amount, description: str) -> DebitResult:
        """Debit ``amount`` if the balance covers it.

        Admin accounts always succeed without any mutation. Otherwise an
        uncovered debit fails and leaves the balance and history untouched;
        a covered one decrements the balance and appends a ``usage``
        transaction, both in one atomic unit.

        Raises:
            InvalidInputError: If amount is not positive
            NotFoundError: If the account does not exist
        """
        amount = _positive_amount(amount)
        with self._unit_of_work() as conn:
            row = self._load_account(conn, account_id)
            current = Decimal(row["balance"])

            if Role(row["role"]) is Role.ADMIN:
                return DebitResult(ok=True, balance=Balance(current, unlimited=True))

            if current < amount:
                logger.info(
                    "debit_rejected",
                    account_id=account_id,
                    required=str(amount),
                    available=str(current),
                )
                return DebitResult(ok=False, balance=Balance(current))

            new_balance = current - amount
            transaction = self._write(
                conn, account_id, -amount, new_balance, description, TransactionCategory.USAGE
            )

        logger.info(
            "credits_debited",
            account_id=account_id,
            amount=str(amount),
            balance=str(new_balance),
        )
        return DebitResult(ok=True, balance=Balance(new_balance), transaction=transaction)

    def credit(
        self,
        account_id: str,
        amount,
        description: str,
        category: TransactionCategory = TransactionCategory.PURCHASE,
    ) -> CreditResult:
        """Add credits and append a transaction with the resulting balance.

        Raises:
            InvalidInputError: If amount is not positive or category is not
                one of purchase, bonus or refund
            NotFoundError: If the account does not exist
        """
        amount = _positive_amount(amount)
        if category not in CREDIT_CATEGORIES:
            raise InvalidInputError(
                f"Invalid category {category.value}; must be one of: "
                f"{sorted(c.value for c in CREDIT_CATEGORIES)}"
            )

        with self._unit_of_work() as conn:
            row = self._load_account(conn, account_id)
            new_balance = Decimal(row["balance"]) + amount
            transaction = self._write(conn, account_id, amount, new_balance, description, category)

        logger.info(
            "credits_added",
            account_id=account_id,
            amount=str(amount),
            category=category.value,
            balance=str(new_balance),
        )
        return CreditResult(ok=True, new_total=new_balance, transaction=transaction)

    def admin_adjust(self, account_id: str, delta, reason: str) -> AdjustmentResult:
        """Apply a signed manual correction, flooring the balance at zero.

        The transaction records the delta actually applied, so the running
        sum of amounts still equals the balance after clamping.

        Raises:
            InvalidInputError: If the target is an admin account or reason is empty
            NotFoundError: If the account does not exist
        """
        delta = to_credits(delta)
        if not reason or not reason.strip():
            raise InvalidInputError("reason is required and cannot be empty")

        with self._unit_of_work() as conn:
            row = self._load_account(conn, account_id)
            if Role(row["role"]) is Role.ADMIN:
                raise InvalidInputError("Cannot adjust admin credits")

            previous = Decimal(row["balance"])
            new_balance = max(Decimal("0.00"), previous + delta)
            transaction = self._write(
                conn,
                account_id,
                new_balance - previous,
                new_balance,
                f"[ADMIN] {reason}",
                TransactionCategory.ADMIN_ADJUSTMENT,
            )

        logger.info(
            "credits_adjusted",
            account_id=account_id,
            requested_delta=str(delta),
            previous_balance=str(previous),
            balance=str(new_balance),
        )
        return AdjustmentResult(
            previous_balance=previous, new_balance=new_balance, transaction=transaction
        )

    def list_transactions(self, account_id: str, page: int = 1, limit: int = 20) -> TransactionPage:
        """Transaction history, newest first.

        Raises:
            InvalidInputError: If page or limit is below 1
        """
        if page < 1 or limit < 1:
            raise InvalidInputError("page and limit must be >= 1")

        conn = get_connection(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            total = conn.execute(
                "SELECT COUNT(*) FROM credit_transaction WHERE account_id = ?",
                (account_id,),
            ).fetchone()[0]
            rows = conn.execute("""
                SELECT * FROM credit_transaction WHERE account_id = ?
                ORDER BY seq DESC LIMIT ? OFFSET ?
            """, (account_id, limit, (page - 1) * limit)).fetchall()
        finally:
            conn.close()

        return TransactionPage(
            transactions=[_row_to_transaction(row) for row in rows],
            page=page,
            page_size=limit,
            total_items=total,
        )

    def transaction_total(self, account_id: str) -> Decimal:
        """Running sum of every transaction amount for an account."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT amount FROM credit_transaction WHERE account_id = ?",
                (account_id,),
            ).fetchall()
        finally:
            conn.close()
        return sum((Decimal(row[0]) for row in rows), Decimal("0.00"))
