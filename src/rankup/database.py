"""SQLite database interface for the rank-up ledger.

Stores wallet accounts, tasks, payments, the append-only history of finished
runs, and the publication saga log. Invariants that must hold no matter which
code path writes (immutable prices, one successful payment per task, one
history row per payment) are enforced by the schema itself.
"""

import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import History, Payment, Publication, Task, WalletAccount

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    pubkey TEXT PRIMARY KEY,
    nonce TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account TEXT NOT NULL,
    mint_address TEXT NOT NULL,
    price INTEGER NOT NULL,
    success INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'created' CHECK(status IN
        ('created', 'paid', 'verifying', 'advancing', 'publishing', 'finalized')),
    error TEXT,
    created_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS payments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account TEXT NOT NULL,
    task_id INTEGER NOT NULL,
    amount INTEGER NOT NULL,
    success INTEGER NOT NULL DEFAULT 0,
    tx TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(id)
);

CREATE TABLE IF NOT EXISTS history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account TEXT NOT NULL,
    mint_address TEXT NOT NULL,
    payment_id INTEGER NOT NULL UNIQUE,
    task_id INTEGER NOT NULL,
    signature TEXT NOT NULL,
    price INTEGER NOT NULL,
    success INTEGER NOT NULL,
    error TEXT,
    finished_at TEXT NOT NULL,
    FOREIGN KEY (payment_id) REFERENCES payments(id),
    FOREIGN KEY (task_id) REFERENCES tasks(id)
);

CREATE TABLE IF NOT EXISTS publications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mint_address TEXT NOT NULL,
    task_id INTEGER,
    cid TEXT NOT NULL,
    uri TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('uploaded', 'committed')),
    signature TEXT,
    created_at TEXT NOT NULL,
    committed_at TEXT
);

-- One successful payment per task, one task per confirmed transaction
CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_task_success ON payments(task_id) WHERE success = 1;
CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_tx ON payments(tx) WHERE tx <> '';

CREATE INDEX IF NOT EXISTS idx_tasks_account ON tasks(account);
CREATE INDEX IF NOT EXISTS idx_tasks_mint ON tasks(mint_address);
CREATE INDEX IF NOT EXISTS idx_payments_account ON payments(account);
CREATE INDEX IF NOT EXISTS idx_history_account ON history(account);
CREATE INDEX IF NOT EXISTS idx_history_mint ON history(mint_address, finished_at);
CREATE INDEX IF NOT EXISTS idx_publications_mint ON publications(mint_address, status);

CREATE TRIGGER IF NOT EXISTS trg_tasks_price_immutable
BEFORE UPDATE OF price ON tasks WHEN NEW.price <> OLD.price
BEGIN
    SELECT RAISE(ABORT, 'task price is immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_payments_amount_immutable
BEFORE UPDATE OF amount ON payments WHEN NEW.amount <> OLD.amount
BEGIN
    SELECT RAISE(ABORT, 'payment amount is immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_history_no_update
BEFORE UPDATE ON history
BEGIN
    SELECT RAISE(ABORT, 'history is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_history_no_delete
BEFORE DELETE ON history
BEGIN
    SELECT RAISE(ABORT, 'history is append-only');
END;
"""


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_task(row) -> Task:
    return Task(
        id=row["id"],
        account=row["account"],
        mint_address=row["mint_address"],
        price=row["price"],
        success=bool(row["success"]),
        status=row["status"],
        error=row["error"],
        created_at=_dt(row["created_at"]),
        finished_at=_dt(row["finished_at"]),
    )


def _row_to_payment(row) -> Payment:
    return Payment(
        id=row["id"],
        account=row["account"],
        task_id=row["task_id"],
        amount=row["amount"],
        success=bool(row["success"]),
        tx=row["tx"],
        created_at=_dt(row["created_at"]),
    )


def _row_to_history(row) -> History:
    return History(
        id=row["id"],
        account=row["account"],
        mint_address=row["mint_address"],
        payment_id=row["payment_id"],
        task_id=row["task_id"],
        signature=row["signature"],
        price=row["price"],
        success=bool(row["success"]),
        error=row["error"],
        finished_at=_dt(row["finished_at"]),
    )


def _row_to_publication(row) -> Publication:
    return Publication(
        id=row["id"],
        mint_address=row["mint_address"],
        task_id=row["task_id"],
        cid=row["cid"],
        uri=row["uri"],
        status=row["status"],
        signature=row["signature"],
        created_at=_dt(row["created_at"]),
        committed_at=_dt(row["committed_at"]),
    )


class Database:
    """Async database interface for the rank-up ledger."""

    def __init__(self, db_path: str = None, page_size: int = None):
        """Initialize database handle.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
            page_size: Rows per page for listing queries. Defaults to config.page_size.
        """
        self.db_path = db_path or config.database_path
        self.page_size = page_size or config.page_size

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as conn:
            await conn.executescript(SCHEMA_SQL)
            await conn.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Account operations
    async def upsert_nonce(self, pubkey: str, nonce: str) -> WalletAccount:
        """Create the account on first challenge, otherwise replace its nonce."""
        now = datetime.utcnow()
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO accounts (pubkey, nonce, created_at) VALUES (?, ?, ?)
                ON CONFLICT(pubkey) DO UPDATE SET nonce = excluded.nonce
                """,
                (pubkey, nonce, now.isoformat()),
            )
            await conn.commit()
        account = await self.get_account(pubkey)
        logger.info(f"Issued nonce for account {pubkey}")
        return account

    async def get_account(self, pubkey: str) -> Optional[WalletAccount]:
        async with self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM accounts WHERE pubkey = ?", (pubkey,))
            row = await cursor.fetchone()
            if row:
                return WalletAccount(
                    pubkey=row["pubkey"],
                    nonce=row["nonce"],
                    created_at=_dt(row["created_at"]),
                )
            return None

    async def rotate_nonce(self, pubkey: str, expected_nonce: str, new_nonce: str) -> bool:
        """Consume a nonce by replacing it, only if it is still the current one.

        Returns:
            True if this call consumed the nonce, False if it was already used.
        """
        async with self._connect() as conn:
            cursor = await conn.execute(
                "UPDATE accounts SET nonce = ? WHERE pubkey = ? AND nonce = ?",
                (new_nonce, pubkey, expected_nonce),
            )
            await conn.commit()
            return cursor.rowcount == 1

    # Task operations
    async def create_task(self, task: Task) -> Task:
        """Insert a task and return it with its assigned ID."""
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO tasks (account, mint_address, price, success, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    task.account,
                    task.mint_address,
                    task.price,
                    1 if task.success else 0,
                    task.status,
                    task.created_at.isoformat(),
                ),
            )
            await conn.commit()
            task_id = cursor.lastrowid
        logger.info(f"Created task {task_id} for {task.mint_address} at price {task.price}")
        return task.model_copy(update={"id": task_id})

    async def get_task(self, task_id: int) -> Optional[Task]:
        async with self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
            return _row_to_task(row) if row else None

    async def list_tasks(self, account: str, page: int = 0) -> list[Task]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM tasks WHERE account = ? ORDER BY id DESC LIMIT ? OFFSET ?",
                (account, self.page_size, page * self.page_size),
            )
            return [_row_to_task(row) for row in await cursor.fetchall()]

    async def update_task_status(self, task_id: int, status: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE tasks SET status = ? WHERE id = ? AND status <> 'finalized'",
                (status, task_id),
            )
            await conn.commit()
        logger.debug(f"Task {task_id} moved to {status}")

    async def finalize_task(self, task_id: int, success: bool, error: Optional[str] = None) -> bool:
        """Finalize a task exactly once.

        Returns:
            True if this call finalized the task, False if it was already final.
        """
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE tasks SET status = 'finalized', success = ?, error = ?, finished_at = ?
                WHERE id = ? AND status <> 'finalized'
                """,
                (1 if success else 0, error, datetime.utcnow().isoformat(), task_id),
            )
            await conn.commit()
            finalized = cursor.rowcount == 1
        if finalized:
            logger.info(f"Finalized task {task_id}: success={success} error={error}")
        return finalized

    # Payment operations
    async def create_payment(self, payment: Payment) -> Payment:
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO payments (account, task_id, amount, success, tx, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    payment.account,
                    payment.task_id,
                    payment.amount,
                    1 if payment.success else 0,
                    payment.tx,
                    payment.created_at.isoformat(),
                ),
            )
            await conn.commit()
            payment_id = cursor.lastrowid
        logger.info(f"Created payment {payment_id} for task {payment.task_id}: amount {payment.amount}")
        return payment.model_copy(update={"id": payment_id})

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        async with self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,))
            row = await cursor.fetchone()
            return _row_to_payment(row) if row else None

    async def list_payments(self, account: str, page: int = 0) -> list[Payment]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM payments WHERE account = ? ORDER BY id DESC LIMIT ? OFFSET ?",
                (account, self.page_size, page * self.page_size),
            )
            return [_row_to_payment(row) for row in await cursor.fetchall()]

    async def claim_payment(self, payment_id: int, tx: str) -> bool:
        """Mark a payment confirmed with its transaction signature (anti-replay).

        The update only applies to an unconfirmed payment, and the schema
        rejects a second successful payment for the same task or a reused
        transaction signature.

        Returns:
            True if this call claimed the payment.
        """
        try:
            async with self._connect() as conn:
                cursor = await conn.execute(
                    "UPDATE payments SET success = 1, tx = ? WHERE id = ? AND success = 0",
                    (tx, payment_id),
                )
                await conn.commit()
                claimed = cursor.rowcount == 1
        except sqlite3.IntegrityError as e:
            logger.warning(f"Payment {payment_id} claim rejected: {e}")
            return False

        if claimed:
            logger.info(f"Payment {payment_id} confirmed by {tx}")
        else:
            logger.warning(f"Payment {payment_id} was already confirmed")
        return claimed

    # History operations
    async def append_history(self, history: History) -> bool:
        """Append the outcome of a finished run.

        Returns:
            True if the row was written, False if the payment already has one.
        """
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO history
                    (account, mint_address, payment_id, task_id, signature, price,
                     success, error, finished_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        history.account,
                        history.mint_address,
                        history.payment_id,
                        history.task_id,
                        history.signature,
                        history.price,
                        1 if history.success else 0,
                        history.error,
                        history.finished_at.isoformat(),
                    ),
                )
                await conn.commit()
        except sqlite3.IntegrityError:
            logger.warning(f"History already recorded for payment {history.payment_id}")
            return False
        logger.info(f"Recorded history for payment {history.payment_id}: success={history.success}")
        return True

    async def get_history_for_payment(self, payment_id: int) -> Optional[History]:
        async with self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM history WHERE payment_id = ?", (payment_id,))
            row = await cursor.fetchone()
            return _row_to_history(row) if row else None

    async def list_history(self, account: str, page: int = 0) -> list[History]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM history WHERE account = ? ORDER BY id DESC LIMIT ? OFFSET ?",
                (account, self.page_size, page * self.page_size),
            )
            return [_row_to_history(row) for row in await cursor.fetchall()]

    async def list_history_for_mint(self, mint_address: str, page: int = 0) -> list[History]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM history WHERE mint_address = ? ORDER BY id DESC LIMIT ? OFFSET ?",
                (mint_address, self.page_size, page * self.page_size),
            )
            return [_row_to_history(row) for row in await cursor.fetchall()]

    async def last_rankup_time(
        self,
        mint_address: str,
        successful_only: bool = True,
        ignored_errors: tuple[str, ...] = (),
    ) -> Optional[datetime]:
        """Time of the most recent finished run for a mint, used for cooldown.

        Runs that ended with one of ``ignored_errors`` are skipped. Those are
        attempts refused before the pipeline started.
        """
        query = "SELECT finished_at FROM history WHERE mint_address = ?"
        params: list = [mint_address]
        if successful_only:
            query += " AND success = 1"
        if ignored_errors:
            placeholders = ", ".join("?" for _ in ignored_errors)
            query += f" AND (error IS NULL OR error NOT IN ({placeholders}))"
            params.extend(ignored_errors)
        query += " ORDER BY finished_at DESC LIMIT 1"
        async with self._connect() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            return _dt(row["finished_at"]) if row else None

    async def has_open_paid_task(self, mint_address: str) -> bool:
        """Whether a task for the mint has a claimed payment but has not finished running."""
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                SELECT 1 FROM tasks t JOIN payments p ON p.task_id = t.id
                WHERE t.mint_address = ? AND t.status <> 'finalized' AND p.success = 1
                LIMIT 1
                """,
                (mint_address,),
            )
            return await cursor.fetchone() is not None

    # Publication operations
    async def create_publication(self, publication: Publication) -> Publication:
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO publications (mint_address, task_id, cid, uri, status, signature, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    publication.mint_address,
                    publication.task_id,
                    publication.cid,
                    publication.uri,
                    publication.status,
                    publication.signature,
                    publication.created_at.isoformat(),
                ),
            )
            await conn.commit()
            publication_id = cursor.lastrowid
        logger.info(f"Recorded upload {publication.cid} for {publication.mint_address}")
        return publication.model_copy(update={"id": publication_id})

    async def mark_publication_committed(self, publication_id: int, signature: Optional[str]) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE publications SET status = 'committed', signature = ?, committed_at = ?
                WHERE id = ?
                """,
                (signature, datetime.utcnow().isoformat(), publication_id),
            )
            await conn.commit()
        logger.info(f"Publication {publication_id} committed on-chain")

    async def get_publication(self, publication_id: int) -> Optional[Publication]:
        async with self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM publications WHERE id = ?", (publication_id,))
            row = await cursor.fetchone()
            return _row_to_publication(row) if row else None

    async def latest_publication(self, mint_address: str) -> Optional[Publication]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM publications WHERE mint_address = ? ORDER BY id DESC LIMIT 1",
                (mint_address,),
            )
            row = await cursor.fetchone()
            return _row_to_publication(row) if row else None

    async def list_uncommitted_publications(self) -> list[Publication]:
        """Latest publication per mint that never reached the chain."""
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM publications p
                WHERE p.status = 'uploaded'
                  AND p.id = (SELECT MAX(id) FROM publications WHERE mint_address = p.mint_address)
                ORDER BY p.id
                """
            )
            return [_row_to_publication(row) for row in await cursor.fetchall()]


# Global database instance
db = Database()
