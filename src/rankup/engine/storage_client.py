"""Content-addressed storage client (nft.storage compatible upload API)."""

from typing import Optional

import httpx

from ..config import config
from ..logging_utils import get_logger

logger = get_logger(__name__)


class StorageError(Exception):
    """Upload failed or the provider returned no content identifier."""


class StorageClient:
    """Uploads files over an authenticated multipart call and returns their CID."""

    def __init__(
        self,
        api_url: str = None,
        api_token: str = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url or config.storage_api_url
        self.api_token = api_token if api_token is not None else config.storage_api_token
        self._http = http or httpx.AsyncClient(timeout=config.http_timeout_seconds)

    async def close(self):
        await self._http.aclose()

    async def upload(self, data: bytes, filename: str) -> str:
        """Upload one file.

        Args:
            data: File contents.
            filename: Name the file is stored under inside the uploaded directory.

        Returns:
            Content identifier of the upload.

        Raises:
            StorageError: On transport failure, a non-success response, or a missing CID.
        """
        logger.info(f"Uploading {filename} ({len(data)} bytes) to {self.api_url}")
        try:
            response = await self._http.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_token}"},
                files={"file": (filename, data, "application/json")},
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Upload request failed: {e}") from e

        if response.status_code >= 400:
            raise StorageError(f"Upload rejected: {response.status_code} {response.text}")

        try:
            body = response.json()
        except ValueError as e:
            raise StorageError("Upload response is not JSON") from e

        if not body.get("ok"):
            raise StorageError(f"Upload not accepted: {body.get('error')}")

        cid = (body.get("value") or {}).get("cid")
        if not cid:
            raise StorageError("Upload response carries no CID")

        logger.info(f"Uploaded {filename} as {cid}")
        return cid
