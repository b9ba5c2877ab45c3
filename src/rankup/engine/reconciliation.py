"""Reconciliation of uploads whose on-chain commit never completed.

For each mint whose latest publication is still ``uploaded``, compare the
on-chain URI with the recorded one. A match means the commit landed but was
never recorded; a mismatch is re-committed with the already uploaded CID.
"""

from typing import Optional

from ..errors import CommitFailed
from ..logging_utils import LogContext, get_logger

logger = get_logger(__name__)


class Reconciler:
    """Finishes interrupted publications."""

    def __init__(self, ledger, publisher, database):
        self.ledger = ledger
        self.publisher = publisher
        self.database = database

    async def reconcile(self, mint_address: str) -> Optional[str]:
        """Bring the on-chain URI of one mint in line with its latest upload.

        Returns:
            The resulting publication status, or None if the mint has no
            publications.

        Raises:
            CommitFailed: If the re-commit fails again.
        """
        with LogContext(mint_address=mint_address):
            publication = await self.database.latest_publication(mint_address)
            if publication is None:
                return None
            if publication.status == "committed":
                return publication.status

            metadata = await self.ledger.get_metadata(mint_address)
            if metadata.uri == publication.uri:
                logger.info(f"On-chain URI already points at {publication.cid}, recording commit")
                await self.database.mark_publication_committed(publication.id, None)
                return "committed"

            logger.info(f"On-chain URI {metadata.uri} is stale, re-committing {publication.uri}")
            await self.publisher.commit(publication)
            return "committed"

    async def reconcile_pending(self) -> dict[str, str]:
        """Reconcile every mint with an uncommitted latest publication.

        Returns:
            Mapping of mint address to ``committed`` or the error code that
            kept it uncommitted.
        """
        results = {}
        for publication in await self.database.list_uncommitted_publications():
            try:
                results[publication.mint_address] = await self.reconcile(publication.mint_address)
            except CommitFailed as e:
                results[publication.mint_address] = e.code
            except Exception as e:
                logger.error(f"Reconciliation of {publication.mint_address} failed: {e}", exc_info=True)
                results[publication.mint_address] = "internal_error"
        logger.info(f"Reconciled {len(results)} publications")
        return results
