"""Collection verification against the configured creator authority."""

from ..config import config
from ..errors import NotInCollection
from ..logging_utils import get_logger
from .token_metadata import TokenMetadata

logger = get_logger(__name__)


class CollectionVerifier:
    """Confirms a token belongs to the collection by its first declared creator."""

    def __init__(self, ledger, authority: str = None):
        """Initialize the verifier.

        Args:
            ledger: Ledger client exposing ``get_metadata(mint_address)``.
            authority: Creator address required in the first creator slot.
        """
        self.ledger = ledger
        self.authority = authority or config.collection_authority

    async def verify(self, mint_address: str) -> TokenMetadata:
        """Resolve and check a token's on-chain metadata.

        Raises:
            NotInCollection: On any resolution failure or creator mismatch.
        """
        try:
            metadata = await self.ledger.get_metadata(mint_address)
        except Exception as e:
            logger.warning(f"Could not resolve metadata for {mint_address}: {e}")
            raise NotInCollection("NFT entered is not from the right collection") from e

        creators = metadata.creator_addresses
        if not creators or creators[0] != self.authority:
            logger.warning(f"Mint {mint_address} has creators {creators}, expected {self.authority} first")
            raise NotInCollection("NFT entered is not from the right collection")

        logger.info(f"Mint {mint_address} verified as part of the collection")
        return metadata
