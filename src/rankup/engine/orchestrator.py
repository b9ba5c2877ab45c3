"""Rank-up orchestrator.

Sequences verification, metadata fetch, the rank roll, persistence and
publication for a paid task, and reconciles the ledger with the outcome.

Task states:

    created -> paid -> verifying -> advancing -> publishing -> finalized

Any pipeline error aborts the remaining steps and finalizes the task as
failed. The payment is never rolled back. A roll that does not advance is a
normal outcome and finalizes with ``success=False`` and no error. A roll that
advanced and was uploaded but not committed on-chain finalizes with
``success=True`` and ``commit_failed``: reconciliation lands the upload later,
and the cooldown counts it from now on.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from ..errors import CommitFailed, PublicationPending, RankupError
from ..logging_utils import LogContext, get_logger
from ..models import History, Payment, RankupOutcome, Task

logger = get_logger(__name__)


class KeyedLock:
    """Table of asyncio locks keyed by string, dropped once nobody holds or waits."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class AdvanceNotCommitted(Exception):
    """The roll advanced and the document was uploaded, but the on-chain commit failed."""

    def __init__(self, previous_rank: str, new_rank: str, cause: CommitFailed):
        super().__init__(cause.message)
        self.previous_rank = previous_rank
        self.new_rank = new_rank
        self.cause = cause


@dataclass(frozen=True)
class RankupResult:
    succeeded: bool
    previous_rank: str
    new_rank: str
    uri: Optional[str] = None


class Orchestrator:
    """Runs the rank-up pipeline, one run per mint at a time."""

    def __init__(self, verifier, store, engine, publisher, database, cooldown=None, locks: Optional[KeyedLock] = None):
        self.verifier = verifier
        self.store = store
        self.engine = engine
        self.publisher = publisher
        self.database = database
        self.cooldown = cooldown
        self.locks = locks or KeyedLock()

    async def run_rankup(self, mint_address: str) -> bool:
        """Run the pipeline for a mint whose payment is already confirmed.

        Nothing is recorded in the ledger and no cooldown applies; paid tasks
        go through ``execute``.

        Returns:
            Whether the rank advanced.

        Raises:
            RankupError: The first pipeline step that failed.
        """
        async with self.locks.hold(mint_address):
            with LogContext(mint_address=mint_address):
                try:
                    result = await self._pipeline(mint_address)
                except AdvanceNotCommitted as e:
                    raise e.cause
        return result.succeeded

    async def _admit(self, mint_address: str) -> None:
        """Refuse a run the ledger says must not happen yet. Makes no external calls."""
        if self.cooldown is not None:
            await self.cooldown.check(mint_address)
        publication = await self.database.latest_publication(mint_address)
        if publication is not None and publication.status != "committed":
            raise PublicationPending(f"Upload {publication.cid} is not committed on-chain yet")

    async def _pipeline(self, mint_address: str, task_id: Optional[int] = None) -> RankupResult:
        await self._advance_state(task_id, "verifying")
        metadata = await self.verifier.verify(mint_address)
        document = await self.store.fetch(metadata.uri)

        await self._advance_state(task_id, "advancing")
        previous_rank = document.attributes[0].value if document.attributes else ""
        attributes, succeeded = self.engine.advance(document.attributes)
        document = document.model_copy(update={"attributes": attributes})
        new_rank = attributes[0].value

        # Keep the local copy in step with the document being published
        await self.store.persist(mint_address, document)

        if not succeeded:
            logger.info(f"Rank stayed at {previous_rank}, nothing to publish")
            return RankupResult(False, previous_rank, new_rank)

        await self._advance_state(task_id, "publishing")
        try:
            published = await self.publisher.publish(mint_address, task_id=task_id)
        except CommitFailed as e:
            raise AdvanceNotCommitted(previous_rank, new_rank, e) from e
        return RankupResult(True, previous_rank, new_rank, published.uri)

    async def _advance_state(self, task_id: Optional[int], status: str) -> None:
        if task_id is not None:
            await self.database.update_task_status(task_id, status)

    async def execute(self, task: Task, payment: Payment) -> RankupOutcome:
        """Run the pipeline for a task whose payment has been claimed, and record the outcome.

        The cooldown and pending-publication checks, the run and the history
        row all happen under the mint's lock, so a second paid task for the
        same mint sees the first one's outcome. Calling this again for a task
        that is already finalized is a no-op returning the recorded outcome.
        """
        async with self.locks.hold(task.mint_address):
            with LogContext(mint_address=task.mint_address):
                return await self._execute_locked(task, payment)

    async def _execute_locked(self, task: Task, payment: Payment) -> RankupOutcome:
        recorded = await self.database.get_history_for_payment(payment.id)
        if recorded is None:
            current = await self.database.get_task(task.id)
            task = current or task
        if recorded is not None or task.finalized:
            logger.info(f"Task {task.id} already finalized, not running again")
            return RankupOutcome(
                task_id=task.id,
                payment_id=payment.id,
                mint_address=task.mint_address,
                success=recorded.success if recorded else task.success,
                error=recorded.error if recorded else task.error,
            )

        await self.database.update_task_status(task.id, "paid")

        outcome = RankupOutcome(task_id=task.id, payment_id=payment.id, mint_address=task.mint_address, success=False)
        try:
            await self._admit(task.mint_address)
            result = await self._pipeline(task.mint_address, task_id=task.id)
            outcome = outcome.model_copy(
                update={
                    "success": result.succeeded,
                    "previous_rank": result.previous_rank,
                    "new_rank": result.new_rank,
                    "uri": result.uri,
                }
            )
        except AdvanceNotCommitted as e:
            # The advanced document is uploaded; reconciliation points the token at it
            logger.error(f"Rank-up for task {task.id} advanced but was not committed: {e.cause.message}")
            outcome = outcome.model_copy(
                update={
                    "success": True,
                    "previous_rank": e.previous_rank,
                    "new_rank": e.new_rank,
                    "error": e.cause.code,
                    "detail": e.cause.message,
                    "retryable": e.cause.retryable,
                }
            )
        except RankupError as e:
            logger.error(f"Rank-up for task {task.id} failed: {e.code}: {e.message}")
            outcome = outcome.model_copy(update={"error": e.code, "detail": e.message, "retryable": e.retryable})
        except Exception as e:
            logger.error(f"Rank-up for task {task.id} crashed: {e}", exc_info=True)
            outcome = outcome.model_copy(update={"error": "internal_error", "detail": str(e)})

        await self.database.finalize_task(task.id, outcome.success, outcome.error)
        await self.database.append_history(
            History(
                account=payment.account,
                mint_address=task.mint_address,
                payment_id=payment.id,
                task_id=task.id,
                signature=payment.tx,
                price=task.price,
                success=outcome.success,
                error=outcome.error,
            )
        )
        return outcome
