"""Task and payment intake.

Quotes the rank-up price from the token's current rank, enforces the
cooldown between rank-ups, and creates payments whose amount always comes
from the task.
"""

from datetime import datetime, timedelta
from typing import Optional

from ..config import config
from ..errors import (
    CooldownActive,
    PublicationPending,
    RankupInProgress,
    TaskAlreadyFinalized,
    TaskNotFound,
)
from ..logging_utils import LogContext, get_logger
from ..models import Payment, Task

logger = get_logger(__name__)

# Runs refused before the pipeline started never count towards the cooldown
REFUSED_RUN_ERRORS = (CooldownActive.code, RankupInProgress.code, PublicationPending.code)


class CooldownPolicy:
    """Minimum spacing between rank-ups of one mint, read from the history ledger."""

    def __init__(self, database, hours: float = None, basis: str = None):
        self.database = database
        self.window = timedelta(hours=hours if hours is not None else config.cooldown_hours)
        self.basis = basis or config.cooldown_basis

    async def check(self, mint_address: str, now: Optional[datetime] = None) -> None:
        """Reject a mint that ranked up too recently. Touches only the local ledger.

        Raises:
            CooldownActive: If the last counted run finished inside the window.
        """
        last = await self.database.last_rankup_time(
            mint_address,
            successful_only=self.basis == "success",
            ignored_errors=REFUSED_RUN_ERRORS,
        )
        if last is None:
            return
        now = now or datetime.utcnow()
        remaining = last + self.window - now
        if remaining > timedelta(0):
            logger.info(f"Mint {mint_address} is in cooldown for another {remaining}")
            raise CooldownActive(f"NFT is in rankup cooldown for another {int(remaining.total_seconds())} seconds")


class TaskService:
    """Creates tasks and payments against the ledger."""

    def __init__(
        self,
        database,
        verifier,
        store,
        rank_table,
        cooldown_hours: float = None,
        cooldown_basis: str = None,
        cooldown: Optional[CooldownPolicy] = None,
    ):
        self.database = database
        self.verifier = verifier
        self.store = store
        self.rank_table = rank_table
        self.cooldown = cooldown or CooldownPolicy(database, cooldown_hours, cooldown_basis)

    async def check_cooldown(self, mint_address: str, now: Optional[datetime] = None) -> None:
        await self.cooldown.check(mint_address, now)

    async def check_available(self, mint_address: str) -> None:
        """Refuse a mint that cannot start a new rank-up right now. Touches only the local ledger.

        Raises:
            CooldownActive: If the mint ranked up too recently.
            RankupInProgress: If a paid task for the mint has not finished.
            PublicationPending: If the last advance is not committed on-chain yet.
        """
        await self.check_cooldown(mint_address)
        if await self.database.has_open_paid_task(mint_address):
            raise RankupInProgress("A paid rank-up for this NFT is still running")
        publication = await self.database.latest_publication(mint_address)
        if publication is not None and publication.status != "committed":
            raise PublicationPending("The previous rank-up of this NFT is still being committed")

    async def quote_price(self, mint_address: str) -> int:
        """Price for ranking up a mint at its current rank.

        Raises:
            NotInCollection, FetchFailed, NoRankAttribute, InvalidRank
        """
        metadata = await self.verifier.verify(mint_address)
        document = await self.store.fetch(metadata.uri)
        rank = document.rank_attribute()
        price = self.rank_table.price_for(rank.value)
        logger.info(f"Quoted {price} for {mint_address} at rank {rank.value}")
        return price

    async def create_task(self, account: str, mint_address: str) -> Task:
        with LogContext(mint_address=mint_address):
            await self.check_available(mint_address)
            price = await self.quote_price(mint_address)
            return await self.database.create_task(Task(account=account, mint_address=mint_address, price=price))

    async def create_payment(self, account: str, task_id: int) -> Payment:
        """Create a payment for a task, copying the task price as the amount.

        Raises:
            TaskNotFound: If the task does not exist or belongs to another account.
            TaskAlreadyFinalized: If the task already ran.
            CooldownActive: If the mint entered cooldown since the task was created.
            RankupInProgress, PublicationPending: If another run for the mint is unfinished.
        """
        task = await self.database.get_task(task_id)
        if task is None or task.account != account:
            raise TaskNotFound("Task does not exist")
        if task.finalized:
            raise TaskAlreadyFinalized(f"Task {task_id} has already been finalized")

        with LogContext(mint_address=task.mint_address):
            await self.check_available(task.mint_address)
            return await self.database.create_payment(Payment(account=account, task_id=task.id, amount=task.price))
