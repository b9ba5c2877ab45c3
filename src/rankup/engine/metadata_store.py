"""Off-chain metadata store.

Fetches a token's JSON document from its declared URI and keeps the working
copy on local disk, keyed by mint address. Publication uploads the bytes read
back from disk, so a crash between persisting and uploading loses nothing.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional

import httpx
from pydantic import ValidationError

from ..config import config
from ..errors import FetchFailed, NoRankAttribute, WriteFailed
from ..logging_utils import get_logger
from ..models import MetadataDocument

logger = get_logger(__name__)


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class MetadataStore:
    """Fetches, persists and reloads metadata documents."""

    def __init__(self, directory: str = None, http: Optional[httpx.AsyncClient] = None):
        self.directory = Path(directory or config.metadata_dir)
        self._http = http or httpx.AsyncClient(timeout=config.http_timeout_seconds, follow_redirects=True)

    async def close(self):
        await self._http.aclose()

    def path_for(self, mint_address: str) -> Path:
        return self.directory / f"{mint_address}.json"

    async def fetch(self, uri: str) -> MetadataDocument:
        """GET and parse the document behind a metadata URI.

        Raises:
            FetchFailed: On transport errors, non-2xx responses, or schema mismatch.
            NoRankAttribute: If the document has no ``Rank`` trait.
        """
        logger.info(f"Fetching metadata from {uri}")
        try:
            response = await self._http.get(uri)
            response.raise_for_status()
            document = MetadataDocument.model_validate_json(response.content)
        except httpx.HTTPError as e:
            logger.error(f"Metadata fetch from {uri} failed: {e}")
            raise FetchFailed("Failed to fetch metadata uri") from e
        except ValidationError as e:
            logger.error(f"Metadata at {uri} does not match the expected schema: {e.error_count()} errors")
            raise FetchFailed("Metadata document is malformed") from e

        if document.rank_attribute() is None:
            raise NoRankAttribute("No rank attribute found in metadata")
        return document

    async def persist(self, mint_address: str, document: MetadataDocument) -> None:
        """Durably write the working copy for a mint.

        Raises:
            WriteFailed: If the file cannot be written.
        """
        path = self.path_for(mint_address)
        data = document.model_dump_json().encode("utf-8")
        try:
            await asyncio.to_thread(_atomic_write, path, data)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise WriteFailed("Failed to save NFT metadata") from e
        logger.info(f"Persisted metadata for {mint_address} to {path}")

    async def load(self, mint_address: str) -> bytes:
        """Read back exactly the bytes last persisted for a mint.

        Raises:
            WriteFailed: If no readable working copy exists.
        """
        path = self.path_for(mint_address)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            raise WriteFailed("Persisted metadata is missing") from e

    async def load_document(self, mint_address: str) -> MetadataDocument:
        data = await self.load(mint_address)
        try:
            return MetadataDocument.model_validate_json(data)
        except ValidationError as e:
            raise WriteFailed("Persisted metadata is corrupt") from e
