"""Publication pipeline: upload the persisted document, then commit its URI on-chain.

The two steps are not atomic. Every successful upload is logged as a
``Publication`` in the ``uploaded`` state before the commit is attempted, so
a failed commit leaves a record that reconciliation can finish later with
the same CID.
"""

from dataclasses import dataclass
from typing import Optional

from ..config import config
from ..errors import CommitFailed, KeystoreError, UploadFailed
from ..logging_utils import get_logger
from ..models import Publication
from .storage_client import StorageError

logger = get_logger(__name__)


@dataclass(frozen=True)
class PublishResult:
    cid: str
    uri: str
    signature: str


def build_metadata_uri(cid: str, mint_address: str, template: str = None) -> str:
    return (template or config.metadata_uri_template).format(cid=cid, mint=mint_address)


class PublicationPipeline:
    """Publishes a mint's persisted metadata document."""

    def __init__(self, store, storage, ledger, keystore, database, uri_template: str = None):
        """Initialize the pipeline.

        Args:
            store: Metadata store holding the persisted document.
            storage: Content-addressed storage client.
            ledger: Ledger client used to submit the URI update.
            keystore: Keystore yielding the update authority keypair.
            database: Ledger database recording publications.
            uri_template: Retrieval URI template with ``{cid}`` and ``{mint}``.
        """
        self.store = store
        self.storage = storage
        self.ledger = ledger
        self.keystore = keystore
        self.database = database
        self.uri_template = uri_template or config.metadata_uri_template

    async def publish(self, mint_address: str, task_id: Optional[int] = None) -> PublishResult:
        """Upload and commit the persisted document for ``mint_address``.

        Raises:
            WriteFailed: If the persisted document cannot be read.
            UploadFailed: If the storage upload fails.
            CommitFailed: If the on-chain update fails after a successful upload.
        """
        data = await self.store.load(mint_address)

        try:
            cid = await self.storage.upload(data, f"{mint_address}.json")
        except StorageError as e:
            logger.error(f"Upload failed for {mint_address}: {e}")
            raise UploadFailed("Failed to upload to IPFS") from e

        uri = build_metadata_uri(cid, mint_address, self.uri_template)
        publication = await self.database.create_publication(
            Publication(mint_address=mint_address, task_id=task_id, cid=cid, uri=uri)
        )
        return await self.commit(publication)

    async def commit(self, publication: Publication) -> PublishResult:
        """Point the token at an already uploaded document.

        Raises:
            CommitFailed: If signing or submission fails.
        """
        try:
            signer = await self.keystore.load()
        except KeystoreError as e:
            raise CommitFailed("Failed to retrieve signing keys") from e

        try:
            signature = await self.ledger.submit_update_instruction(signer, publication.mint_address, publication.uri)
        except Exception as e:
            logger.error(
                f"Commit of {publication.uri} failed for {publication.mint_address}; "
                f"off-chain document {publication.cid} is live but the on-chain URI is stale: {e}"
            )
            raise CommitFailed("Failed to upload metadata uri to Metaplex") from e

        await self.database.mark_publication_committed(publication.id, signature)
        logger.info(f"Committed {publication.uri} for {publication.mint_address}")
        return PublishResult(cid=publication.cid, uri=publication.uri, signature=signature)
