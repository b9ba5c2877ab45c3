"""Shared data models for the rank-up service.

Ledger records, the off-chain metadata document, and API request/response
bodies.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

TaskStatus = Literal["created", "paid", "verifying", "advancing", "publishing", "finalized"]


# Ledger records
class WalletAccount(BaseModel):
    """Wallet that requested an auth challenge."""

    pubkey: str = Field(description="Base58 wallet public key")
    nonce: str = Field(description="Single-use challenge the wallet must sign")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Task(BaseModel):
    """One rank-up attempt for a token."""

    id: Optional[int] = None
    account: str = Field(description="Wallet that requested the rank-up")
    mint_address: str = Field(description="Token mint address")
    price: int = Field(description="Price snapshot taken from the rank table at creation")
    success: bool = Field(default=False)
    status: TaskStatus = Field(default="created")
    error: Optional[str] = Field(default=None, description="Error code when finalized as failed")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def finalized(self) -> bool:
        return self.status == "finalized"


class Payment(BaseModel):
    """Fee payment against a task. The amount is always the task price."""

    id: Optional[int] = None
    account: str
    task_id: int
    amount: int
    success: bool = Field(default=False)
    tx: str = Field(default="", description="Ledger transaction signature once confirmed")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class History(BaseModel):
    """Append-only outcome of a finished rank-up run."""

    id: Optional[int] = None
    account: str
    mint_address: str
    payment_id: int
    task_id: int
    signature: str
    price: int
    success: bool
    error: Optional[str] = None
    finished_at: datetime = Field(default_factory=datetime.utcnow)


class Publication(BaseModel):
    """Saga log entry for uploading a document and committing its URI on-chain."""

    id: Optional[int] = None
    mint_address: str
    task_id: Optional[int] = None
    cid: str
    uri: str
    status: Literal["uploaded", "committed"] = Field(default="uploaded")
    signature: Optional[str] = Field(default=None, description="Update transaction signature")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    committed_at: Optional[datetime] = None


# Off-chain metadata document
class MetadataAttribute(BaseModel):
    trait_type: str
    value: str


class MetadataDocument(BaseModel):
    """Off-chain JSON document referenced by the token's metadata URI.

    Keys outside the known schema are kept so that a re-published document
    only differs from the fetched one in the rank attribute.
    """

    model_config = ConfigDict(extra="allow")

    name: str
    symbol: str
    description: str
    seller_fee_basis_points: int
    image: str
    external_url: str = ""
    attributes: list[MetadataAttribute]
    properties: dict[str, Any] = Field(default_factory=dict)

    def rank_attribute(self) -> Optional[MetadataAttribute]:
        for attribute in self.attributes:
            if attribute.trait_type == "Rank":
                return attribute
        return None


# API requests
class NonceResponse(BaseModel):
    nonce: str


class AuthRequest(BaseModel):
    pubkey: str = Field(description="Base58 wallet public key")
    signature: str = Field(description="Base58 ed25519 signature of the nonce")


class TaskCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mint_address: str
    account: str


class PaymentCreate(BaseModel):
    """Payment creation request.

    Extra keys are rejected, so a client can never submit its own amount.
    """

    model_config = ConfigDict(extra="forbid")

    task_id: int
    account: str


class PaymentReceive(BaseModel):
    """Payment confirmation webhook payload."""

    payment_id: int = Field(description="Payment being confirmed")
    tx_id: str = Field(description="Ledger transaction signature of the fee transfer")


class RankupOutcome(BaseModel):
    """Result of a finalized rank-up run."""

    task_id: int
    payment_id: int
    mint_address: str
    success: bool
    previous_rank: Optional[str] = None
    new_rank: Optional[str] = None
    uri: Optional[str] = None
    error: Optional[str] = Field(default=None, description="Error code when the run failed")
    detail: Optional[str] = None
    retryable: bool = False
