"""Wallet authentication.

A wallet asks for a nonce, signs it with its ed25519 key, and trades the
signature for a short-lived bearer token. Each nonce is accepted once.
"""

import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from solders.pubkey import Pubkey
from solders.signature import Signature

from ..config import config
from ..errors import AuthenticationFailed
from ..logging_utils import get_logger

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"


def verify_wallet_signature(pubkey: str, signature: str, message: bytes) -> bool:
    """Check a base58 ed25519 signature of ``message`` by ``pubkey``."""
    try:
        return Signature.from_string(signature).verify(Pubkey.from_string(pubkey), message)
    except ValueError as e:
        logger.warning(f"Malformed pubkey or signature from {pubkey}: {e}")
        return False


class AuthService:
    """Issues nonces and exchanges signed nonces for tokens."""

    def __init__(self, database, secret: str = None, ttl_minutes: int = None):
        self.database = database
        self.secret = secret or config.jwt_secret
        self.ttl = timedelta(minutes=ttl_minutes or config.jwt_ttl_minutes)

    async def request_nonce(self, pubkey: str) -> str:
        try:
            Pubkey.from_string(pubkey)
        except ValueError:
            raise AuthenticationFailed("Invalid public key")
        nonce = uuid.uuid4().hex
        await self.database.upsert_nonce(pubkey, nonce)
        return nonce

    async def authenticate(self, pubkey: str, signature: str) -> str:
        """Verify the signed nonce and return a bearer token.

        Raises:
            AuthenticationFailed: Unknown wallet, bad signature, or a nonce
                that was already used.
        """
        account = await self.database.get_account(pubkey)
        if account is None:
            raise AuthenticationFailed("Request a nonce first")

        if not verify_wallet_signature(pubkey, signature, account.nonce.encode()):
            logger.warning(f"Signature verification failed for {pubkey}")
            raise AuthenticationFailed("Signature verification failed")

        if not await self.database.rotate_nonce(pubkey, account.nonce, uuid.uuid4().hex):
            raise AuthenticationFailed("Nonce already used")

        logger.info(f"Authenticated {pubkey}")
        return self.issue_token(pubkey)

    def issue_token(self, pubkey: str) -> str:
        expire = datetime.now(timezone.utc) + self.ttl
        return jwt.encode({"sub": pubkey, "exp": expire}, self.secret, algorithm=JWT_ALGORITHM)

    def decode_token(self, token: str) -> str:
        """Return the wallet a token was issued to.

        Raises:
            AuthenticationFailed: Expired, tampered, or malformed token.
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[JWT_ALGORITHM])
        except JWTError as err:
            raise AuthenticationFailed("Could not validate credentials") from err
        subject = payload.get("sub")
        if not subject:
            raise AuthenticationFailed("Could not validate credentials")
        return subject
