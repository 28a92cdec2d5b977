"""Persistence layer for subscriptions and their payments."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional, Sequence

from coinsub.crypto.coins import Coin
from coinsub.errors import CoinsubError

from .models import (
    PaymentRecord,
    PaymentStatus,
    Plan,
    SubscriptionRecord,
    SubscriptionStatus,
    VerificationSource,
)


class PersistenceConflict(CoinsubError):
    """Raised when a concurrent writer already claimed the same payment key."""


_SUBSCRIPTION_COLUMNS = (
    "id, email, plan, fiat_amount, fiat_currency, coin, crypto_amount, conversion_rate, interval, status, "
    "receiving_address, issuance_info, start_at, expiration_at, last_payment_at, reminder_sent, "
    "created_at, updated_at"
)

_PAYMENT_COLUMNS = (
    "id, subscription_id, coin, txid_in, txid_out, claimed_amount, confirmed_claimed_amount, verified_amount, "
    "forwarded_amount, fee, confirmations, status, verification_source, review_flag, raw_payload, paid_at, "
    "created_at, updated_at"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    return json.loads(value)


class SubscriptionRepository:
    """SQLite-backed repository for subscriptions and payments.

    All writes go through :meth:`transaction`; nested calls join the outer
    transaction so a payment row and the subscription transition it drives
    commit (or roll back) together.
    """

    def __init__(self, db_path: str | Path) -> None:
        path = Path(db_path)
        if str(path) != ":memory:" and path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")
        self._lock = RLock()
        self._depth = 0
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self.transaction():
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    plan TEXT NOT NULL,
                    fiat_amount REAL NOT NULL,
                    fiat_currency TEXT NOT NULL DEFAULT 'USD',
                    coin TEXT NOT NULL,
                    crypto_amount REAL NOT NULL CHECK (crypto_amount > 0),
                    conversion_rate REAL NOT NULL CHECK (conversion_rate > 0),
                    interval TEXT NOT NULL,
                    status TEXT NOT NULL,
                    receiving_address TEXT,
                    issuance_info TEXT,
                    start_at TEXT NOT NULL,
                    expiration_at TEXT NOT NULL,
                    last_payment_at TEXT,
                    reminder_sent INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (expiration_at > start_at)
                )
                """
            )
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS payments (
                    id TEXT PRIMARY KEY,
                    subscription_id TEXT NOT NULL REFERENCES subscriptions(id),
                    coin TEXT NOT NULL,
                    txid_in TEXT NOT NULL,
                    txid_out TEXT,
                    claimed_amount REAL NOT NULL,
                    confirmed_claimed_amount REAL,
                    verified_amount REAL,
                    forwarded_amount REAL,
                    fee REAL,
                    confirmations INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    verification_source TEXT NOT NULL,
                    review_flag TEXT,
                    raw_payload TEXT NOT NULL,
                    paid_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (subscription_id, txid_in)
                )
                """
            )
            self._connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_email ON subscriptions(email)"
            )
            self._connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_status_expiration "
                "ON subscriptions(status, expiration_at)"
            )
        self._ensure_columns()

    def _ensure_columns(self) -> None:
        cursor = self._connection.execute("PRAGMA table_info(payments)")
        columns = {row[1] for row in cursor.fetchall()}
        with self.transaction():
            if "review_flag" not in columns:
                self._connection.execute("ALTER TABLE payments ADD COLUMN review_flag TEXT")
            if "confirmed_claimed_amount" not in columns:
                self._connection.execute("ALTER TABLE payments ADD COLUMN confirmed_claimed_amount REAL")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed writes atomically; nested use joins the outer transaction."""

        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._connection.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._connection.execute("ROLLBACK")
                raise
            else:
                self._connection.execute("COMMIT")
            finally:
                self._depth = 0

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(sql, params).fetchall()

    # Subscriptions

    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        with self.transaction():
            self._connection.execute(
                f"INSERT INTO subscriptions ({_SUBSCRIPTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.email,
                    record.plan.value,
                    record.fiat_amount,
                    record.fiat_currency,
                    record.coin.value,
                    record.crypto_amount,
                    record.conversion_rate,
                    record.interval,
                    record.status.value,
                    record.receiving_address,
                    _dumps(record.issuance_info),
                    _ts(record.start_at),
                    _ts(record.expiration_at),
                    _ts(record.last_payment_at),
                    int(record.reminder_sent),
                    _ts(record.created_at),
                    _ts(record.updated_at),
                ),
            )
        return record

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        rows = self._query(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE id = ?",
            (subscription_id,),
        )
        return self._to_subscription(rows[0]) if rows else None

    def latest_for_email(self, email: str) -> Optional[SubscriptionRecord]:
        rows = self._query(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE email = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (email,),
        )
        return self._to_subscription(rows[0]) if rows else None

    def find_active(self, email: str, now: datetime) -> Optional[SubscriptionRecord]:
        rows = self._query(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions "
            "WHERE email = ? AND status = ? AND expiration_at >= ? "
            "ORDER BY expiration_at DESC LIMIT 1",
            (email, SubscriptionStatus.active.value, _ts(now)),
        )
        return self._to_subscription(rows[0]) if rows else None

    def set_receiving_address(
        self,
        subscription_id: str,
        *,
        address: str,
        issuance_info: Dict[str, Any],
        updated_at: datetime,
    ) -> Optional[SubscriptionRecord]:
        with self.transaction():
            cursor = self._connection.execute(
                "UPDATE subscriptions SET receiving_address = ?, issuance_info = ?, updated_at = ? WHERE id = ?",
                (address, _dumps(issuance_info), _ts(updated_at), subscription_id),
            )
        if cursor.rowcount == 0:
            return None
        return self.get_subscription(subscription_id)

    def transition(
        self,
        subscription_id: str,
        *,
        to_status: SubscriptionStatus,
        from_statuses: Sequence[SubscriptionStatus],
        updated_at: datetime,
    ) -> bool:
        """Move to ``to_status`` only when the current status is one of ``from_statuses``."""

        placeholders = ", ".join("?" for _ in from_statuses)
        with self.transaction():
            cursor = self._connection.execute(
                f"UPDATE subscriptions SET status = ?, updated_at = ? WHERE id = ? AND status IN ({placeholders})",
                (to_status.value, _ts(updated_at), subscription_id, *(status.value for status in from_statuses)),
            )
        return cursor.rowcount > 0

    def apply_payment_period(
        self,
        subscription_id: str,
        *,
        expiration_at: datetime,
        last_payment_at: datetime,
        updated_at: datetime,
    ) -> None:
        with self.transaction():
            self._connection.execute(
                """
                UPDATE subscriptions
                SET status = ?, expiration_at = ?, last_payment_at = ?, reminder_sent = 0, updated_at = ?
                WHERE id = ?
                """,
                (
                    SubscriptionStatus.active.value,
                    _ts(expiration_at),
                    _ts(last_payment_at),
                    _ts(updated_at),
                    subscription_id,
                ),
            )

    def list_expiring(self, start: datetime, end: datetime) -> List[SubscriptionRecord]:
        rows = self._query(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions "
            "WHERE status = ? AND reminder_sent = 0 AND expiration_at >= ? AND expiration_at <= ? "
            "ORDER BY expiration_at",
            (SubscriptionStatus.active.value, _ts(start), _ts(end)),
        )
        return [self._to_subscription(row) for row in rows]

    def mark_reminder_sent(self, subscription_id: str, *, updated_at: datetime) -> bool:
        with self.transaction():
            cursor = self._connection.execute(
                "UPDATE subscriptions SET reminder_sent = 1, updated_at = ? WHERE id = ? AND reminder_sent = 0",
                (_ts(updated_at), subscription_id),
            )
        return cursor.rowcount > 0

    def list_lapsed(self, now: datetime) -> List[SubscriptionRecord]:
        rows = self._query(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions "
            "WHERE status = ? AND expiration_at < ? ORDER BY expiration_at",
            (SubscriptionStatus.active.value, _ts(now)),
        )
        return [self._to_subscription(row) for row in rows]

    def expire(self, subscription_id: str, *, now: datetime) -> bool:
        """Expire an active, lapsed subscription. Returns ``False`` if it no longer qualifies."""

        with self.transaction():
            cursor = self._connection.execute(
                "UPDATE subscriptions SET status = ?, updated_at = ? "
                "WHERE id = ? AND status = ? AND expiration_at < ?",
                (
                    SubscriptionStatus.expired.value,
                    _ts(now),
                    subscription_id,
                    SubscriptionStatus.active.value,
                    _ts(now),
                ),
            )
        return cursor.rowcount > 0

    def count_by_status(self, status: SubscriptionStatus) -> int:
        rows = self._query("SELECT COUNT(*) FROM subscriptions WHERE status = ?", (status.value,))
        return int(rows[0][0])

    def count_subscriptions(self) -> int:
        rows = self._query("SELECT COUNT(*) FROM subscriptions")
        return int(rows[0][0])

    # Payments

    def get_payment(self, subscription_id: str, txid_in: str) -> Optional[PaymentRecord]:
        rows = self._query(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE subscription_id = ? AND txid_in = ?",
            (subscription_id, txid_in),
        )
        return self._to_payment(rows[0]) if rows else None

    def list_payments(self, subscription_id: str) -> List[PaymentRecord]:
        rows = self._query(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE subscription_id = ? ORDER BY created_at DESC",
            (subscription_id,),
        )
        return [self._to_payment(row) for row in rows]

    def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        """Insert a payment, raising :class:`PersistenceConflict` if the dedup key is taken."""

        with self.transaction():
            cursor = self._connection.execute(
                f"INSERT INTO payments ({_PAYMENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (subscription_id, txid_in) DO NOTHING",
                (
                    record.id,
                    record.subscription_id,
                    record.coin.value,
                    record.txid_in,
                    record.txid_out,
                    record.claimed_amount,
                    record.confirmed_claimed_amount,
                    record.verified_amount,
                    record.forwarded_amount,
                    record.fee,
                    record.confirmations,
                    record.status.value,
                    record.verification_source.value,
                    record.review_flag,
                    _dumps(record.raw_payload),
                    _ts(record.paid_at),
                    _ts(record.created_at),
                    _ts(record.updated_at),
                ),
            )
            if cursor.rowcount == 0:
                raise PersistenceConflict(
                    f"payment for subscription={record.subscription_id} txid={record.txid_in} already exists"
                )
        return record

    def complete_payment(
        self,
        payment_id: str,
        *,
        confirmed_claimed_amount: Optional[float],
        verified_amount: Optional[float],
        verification_source: VerificationSource,
        forwarded_amount: Optional[float],
        fee: Optional[float],
        txid_out: Optional[str],
        confirmations: int,
        review_flag: Optional[str],
        raw_payload: Dict[str, Any],
        paid_at: datetime,
    ) -> None:
        """Promote a pending payment in place; raises :class:`PersistenceConflict` if it was already completed."""

        with self.transaction():
            cursor = self._connection.execute(
                """
                UPDATE payments
                SET status = ?, confirmed_claimed_amount = ?, verified_amount = ?, verification_source = ?,
                    forwarded_amount = ?, fee = ?, txid_out = ?, confirmations = ?, review_flag = ?,
                    raw_payload = ?, paid_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    PaymentStatus.completed.value,
                    confirmed_claimed_amount,
                    verified_amount,
                    verification_source.value,
                    forwarded_amount,
                    fee,
                    txid_out,
                    confirmations,
                    review_flag,
                    _dumps(raw_payload),
                    _ts(paid_at),
                    _ts(paid_at),
                    payment_id,
                    PaymentStatus.pending.value,
                ),
            )
            if cursor.rowcount == 0:
                raise PersistenceConflict(f"payment {payment_id} is no longer pending")

    def get_payment_by_id(self, payment_id: str) -> Optional[PaymentRecord]:
        rows = self._query(f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = ?", (payment_id,))
        return self._to_payment(rows[0]) if rows else None

    def close(self) -> None:
        with self._lock:
            self._connection.close()

    @staticmethod
    def _to_subscription(row: sqlite3.Row) -> SubscriptionRecord:
        return SubscriptionRecord(
            id=row["id"],
            email=row["email"],
            plan=Plan(row["plan"]),
            fiat_amount=float(row["fiat_amount"]),
            fiat_currency=row["fiat_currency"],
            coin=Coin(row["coin"]),
            crypto_amount=float(row["crypto_amount"]),
            conversion_rate=float(row["conversion_rate"]),
            interval=row["interval"],
            status=SubscriptionStatus(row["status"]),
            receiving_address=row["receiving_address"],
            issuance_info=_loads(row["issuance_info"]),
            start_at=_dt(row["start_at"]),
            expiration_at=_dt(row["expiration_at"]),
            last_payment_at=_dt(row["last_payment_at"]),
            reminder_sent=bool(row["reminder_sent"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _to_payment(row: sqlite3.Row) -> PaymentRecord:
        return PaymentRecord(
            id=row["id"],
            subscription_id=row["subscription_id"],
            coin=Coin(row["coin"]),
            txid_in=row["txid_in"],
            txid_out=row["txid_out"],
            claimed_amount=float(row["claimed_amount"]),
            confirmed_claimed_amount=row["confirmed_claimed_amount"],
            verified_amount=row["verified_amount"],
            forwarded_amount=row["forwarded_amount"],
            fee=row["fee"],
            confirmations=int(row["confirmations"] or 0),
            status=PaymentStatus(row["status"]),
            verification_source=VerificationSource(row["verification_source"]),
            review_flag=row["review_flag"],
            raw_payload=_loads(row["raw_payload"]) or {},
            paid_at=_dt(row["paid_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )
