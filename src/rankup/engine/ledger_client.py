"""Solana ledger client.

Resolves token metadata accounts, confirms fee transactions, and submits
metadata URI updates signed by the update authority.
"""

import asyncio
import time
from typing import Callable, Iterator, Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from ..config import config
from ..errors import ConfirmationTimeout
from ..logging_utils import get_logger
from .token_metadata import TokenMetadata, build_update_uri_instruction, decode_metadata, find_metadata_pda

logger = get_logger(__name__)

_CONFIRMATION_LEVELS = (
    (TransactionConfirmationStatus.Processed, 0),
    (TransactionConfirmationStatus.Confirmed, 1),
    (TransactionConfirmationStatus.Finalized, 2),
)
_COMMITMENT_LEVELS = {"processed": 0, "confirmed": 1, "finalized": 2}


def _confirmation_level(confirmation_status) -> int:
    for known, level in _CONFIRMATION_LEVELS:
        if confirmation_status == known:
            return level
    return -1


class LedgerError(Exception):
    """A ledger query or submission failed."""


class MetadataAccountNotFound(LedgerError):
    """The mint has no metadata account."""


def backoff_delays(initial: float, maximum: float) -> Iterator[float]:
    """Exponential delays starting at ``initial``, doubling up to ``maximum``."""
    delay = initial
    while True:
        yield delay
        delay = min(delay * 2, maximum)


class LedgerClient:
    """Thin async wrapper over the Solana JSON-RPC API."""

    def __init__(
        self,
        rpc_url: str = None,
        commitment: str = None,
        client: Optional[AsyncClient] = None,
        confirmation_timeout: float = None,
        initial_delay: float = None,
        max_delay: float = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.commitment = commitment or config.solana_commitment
        self.client = client or AsyncClient(
            rpc_url or config.solana_rpc_url,
            commitment=Commitment(self.commitment),
            timeout=config.http_timeout_seconds,
        )
        self.confirmation_timeout = (
            confirmation_timeout if confirmation_timeout is not None else config.confirmation_timeout_seconds
        )
        self.initial_delay = initial_delay if initial_delay is not None else config.confirmation_initial_delay_seconds
        self.max_delay = max_delay if max_delay is not None else config.confirmation_max_delay_seconds
        self._sleep = sleep
        self._clock = clock

    async def close(self) -> None:
        await self.client.close()

    async def get_metadata(self, mint_address: str) -> TokenMetadata:
        """Fetch and decode the metadata account of a mint.

        Raises:
            ValueError: If the mint address is not a valid public key.
            MetadataAccountNotFound: If the account does not exist.
            MetadataDecodeError: If the account data cannot be decoded.
        """
        mint = Pubkey.from_string(mint_address)
        metadata_address = find_metadata_pda(mint)
        resp = await self.client.get_account_info(metadata_address)
        if resp.value is None or resp.value.data is None:
            raise MetadataAccountNotFound(f"No metadata account for mint {mint_address}")
        return decode_metadata(bytes(resp.value.data))

    async def confirm_transaction(self, signature: str) -> bool:
        """Wait until a transaction reaches the configured commitment.

        Polls signature status with exponential backoff, bounded by the
        confirmation timeout. RPC transport errors count as a poll without
        an answer.

        Returns:
            True if the transaction landed successfully, False if it failed on-chain.

        Raises:
            ValueError: If the signature is malformed.
            ConfirmationTimeout: If the transaction was not confirmed in time.
        """
        sig = Signature.from_string(signature)
        required = _COMMITMENT_LEVELS[self.commitment]
        deadline = self._clock() + self.confirmation_timeout

        for delay in backoff_delays(self.initial_delay, self.max_delay):
            try:
                resp = await self.client.get_signature_statuses([sig], search_transaction_history=True)
            except (httpx.HTTPError, SolanaRpcException) as e:
                logger.warning(f"Status query for {signature} failed, retrying: {e}")
                resp = None
            status = resp.value[0] if resp is not None and resp.value else None
            if status is not None:
                if status.err is not None:
                    logger.warning(f"Transaction {signature} failed on-chain: {status.err}")
                    return False
                level = _confirmation_level(status.confirmation_status)
                if level >= required:
                    logger.info(f"Transaction {signature} reached {self.commitment}")
                    return True

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(delay, remaining))

        logger.error(f"Transaction {signature} not confirmed within {self.confirmation_timeout}s")
        raise ConfirmationTimeout(f"Transaction {signature} was not confirmed in time")

    async def submit_update_instruction(self, signer: Keypair, mint_address: str, new_uri: str) -> str:
        """Point a token's metadata URI at ``new_uri``.

        Returns:
            Signature of the confirmed update transaction.

        Raises:
            LedgerError: If submission fails or the transaction does not land.
        """
        metadata = await self.get_metadata(mint_address)
        instruction = build_update_uri_instruction(metadata, new_uri, signer.pubkey())

        blockhash_resp = await self.client.get_latest_blockhash()
        message = MessageV0.try_compile(signer.pubkey(), [instruction], [], blockhash_resp.value.blockhash)
        tx = VersionedTransaction(message, [signer])

        resp = await self.client.send_raw_transaction(
            bytes(tx),
            opts=TxOpts(skip_preflight=False, preflight_commitment=Commitment(self.commitment)),
        )
        signature = str(resp.value)
        logger.info(f"Submitted metadata update for {mint_address}: {signature}")

        if not await self.confirm_transaction(signature):
            raise LedgerError(f"Metadata update {signature} failed on-chain")
        return signature
