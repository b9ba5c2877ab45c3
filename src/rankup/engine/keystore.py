"""Update authority keypair loading.

Key material is read from disk on every call and never cached.
"""

import asyncio
import json
from pathlib import Path

import base58
from solders.keypair import Keypair

from ..config import config
from ..errors import KeystoreError
from ..logging_utils import get_logger

logger = get_logger(__name__)


def parse_keypair(raw: str) -> Keypair:
    """Parse a Solana CLI keypair file (JSON byte array) or a base58 secret."""
    text = raw.strip()
    if text.startswith("["):
        secret = bytes(json.loads(text))
    else:
        secret = base58.b58decode(text)
    if len(secret) != 64:
        raise ValueError(f"Expected a 64 byte secret, got {len(secret)} bytes")
    return Keypair.from_bytes(secret)


class Keystore:
    """Reads the signing keypair from a protected local file."""

    def __init__(self, path: str = None):
        self.path = Path(path or config.keystore_path)

    async def load(self) -> Keypair:
        """Load the keypair.

        Raises:
            KeystoreError: If the file is missing or does not hold a keypair.
        """
        try:
            raw = await asyncio.to_thread(self.path.read_text)
        except OSError as e:
            logger.error(f"Failed to read keystore {self.path}: {e}")
            raise KeystoreError("Failed to retrieve signing keys") from e

        try:
            return parse_keypair(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Keystore {self.path} does not contain a valid keypair")
            raise KeystoreError("Failed to retrieve signing keys") from e
