"""Fake network services and a wired pipeline for tests."""

import json
from itertools import count
from typing import Optional

import httpx
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from rankup.database import Database
from rankup.engine.collection import CollectionVerifier
from rankup.engine.ledger_client import MetadataAccountNotFound
from rankup.engine.metadata_store import MetadataStore
from rankup.engine.orchestrator import Orchestrator
from rankup.engine.progression import ProgressionEngine
from rankup.engine.publication import PublicationPipeline
from rankup.engine.ranks import RankTable
from rankup.engine.reconciliation import Reconciler
from rankup.engine.storage_client import StorageError
from rankup.engine.tasks import CooldownPolicy, TaskService
from rankup.engine.token_metadata import Creator, TokenMetadata
from rankup.engine.webhooks import WebhookHandler, sign_webhook_payload
from rankup.errors import KeystoreError
from rankup.models import PaymentReceive

AUTHORITY = "Bf2jdfoFrqVS2n6eDtzzmb8cbue7B1ibcZF4QCvruqav"
WEBHOOK_SECRET = "test_webhook_secret"
URI_TEMPLATE = "https://ipfs.test/ipfs/{cid}/{mint}.json"


def rank_document(rank: str = "Genin", attributes: Optional[list] = None, **extra) -> dict:
    """Off-chain metadata document with ``Rank`` in the first attribute slot."""
    if attributes is None:
        attributes = [
            {"trait_type": "Rank", "value": rank},
            {"trait_type": "Clan", "value": "Uzumaki"},
            {"trait_type": "Element", "value": "Wind"},
        ]
    document = {
        "name": "Kamakura #1042",
        "symbol": "KMKR",
        "description": "Shinobi of Kamakura",
        "seller_fee_basis_points": 500,
        "image": "https://arweave.test/1042.png",
        "external_url": "https://kamakura.test",
        "attributes": attributes,
        "properties": {"files": [{"uri": "https://arweave.test/1042.png", "type": "image/png"}], "category": "image"},
    }
    document.update(extra)
    return document


def make_token_metadata(mint: str, uri: str, creators: Optional[list[str]] = None) -> TokenMetadata:
    creators = [AUTHORITY] if creators is None else creators
    return TokenMetadata(
        update_authority=Pubkey.from_string(AUTHORITY),
        mint=Pubkey.from_string(mint),
        name="Kamakura #1042",
        symbol="KMKR",
        uri=uri,
        seller_fee_basis_points=500,
        creators=[Creator(Pubkey.from_string(address), index == 0, 100 if index == 0 else 0)
                  for index, address in enumerate(creators)],
    )


def _padded(value: str, width: int) -> bytes:
    raw = value.encode("utf-8").ljust(width, b"\x00")
    return len(raw).to_bytes(4, "little") + raw


def encode_metadata_account(metadata: TokenMetadata, trailing: bool = True) -> bytes:
    """Serialize a ``MetadataV1`` account the way the program lays it out on-chain."""
    data = bytes([4]) + bytes(metadata.update_authority) + bytes(metadata.mint)
    data += _padded(metadata.name, 32) + _padded(metadata.symbol, 10) + _padded(metadata.uri, 200)
    data += metadata.seller_fee_basis_points.to_bytes(2, "little")
    if metadata.creators:
        data += b"\x01" + len(metadata.creators).to_bytes(4, "little")
        for creator in metadata.creators:
            data += bytes(creator.address) + bytes([1 if creator.verified else 0, creator.share])
    else:
        data += b"\x00"
    data += bytes([1 if metadata.primary_sale_happened else 0, 1 if metadata.is_mutable else 0])
    if trailing:
        data += b"\x01\xfe"  # edition nonce
        data += b"\x01\x00"  # token standard
        data += b"\x00"  # collection
        data += b"\x00"  # uses
        data += b"\x00" * 64  # account padding
    return data


class FakeLedger:
    """In-memory stand-in for the ledger client."""

    def __init__(self):
        self.metadata: dict[str, TokenMetadata] = {}
        self.confirmations: dict[str, object] = {}
        self.submitted: list[tuple[str, str, str]] = []
        self.commit_error: Optional[Exception] = None
        self._signatures = count(1)

    async def get_metadata(self, mint_address: str) -> TokenMetadata:
        if mint_address not in self.metadata:
            raise MetadataAccountNotFound(f"No metadata account for mint {mint_address}")
        return self.metadata[mint_address]

    async def confirm_transaction(self, signature: str) -> bool:
        result = self.confirmations.get(signature, True)
        if isinstance(result, Exception):
            raise result
        return result

    async def submit_update_instruction(self, signer: Keypair, mint_address: str, new_uri: str) -> str:
        if self.commit_error is not None:
            raise self.commit_error
        self.submitted.append((str(signer.pubkey()), mint_address, new_uri))
        self.metadata[mint_address] = self.metadata[mint_address].with_uri(new_uri)
        return f"update-sig-{next(self._signatures)}"


class FakeStorage:
    """Content-addressed storage keeping uploads in memory."""

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.uploads: list[tuple[str, str]] = []
        self.error: Optional[Exception] = None
        self._cids = count(1)

    async def upload(self, data: bytes, filename: str) -> str:
        if self.error is not None:
            raise self.error
        cid = f"bafy{next(self._cids):04d}"
        self.files[cid] = data
        self.uploads.append((cid, filename))
        return cid


class FakeKeystore:
    def __init__(self):
        self.keypair = Keypair()
        self.fail = False

    async def load(self) -> Keypair:
        if self.fail:
            raise KeystoreError("Failed to retrieve signing keys")
        return self.keypair


class Harness:
    """Pipeline wired against a temporary database and fake services."""

    def __init__(self, tmp_path, cooldown_basis: str = "success", cooldown_hours: float = 12):
        self.database = Database(str(tmp_path / "test.db"), page_size=10)
        self.documents: dict[str, dict] = {}
        self.ledger = FakeLedger()
        self.storage = FakeStorage()
        self.keystore = FakeKeystore()
        self.roll = 70
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(self._serve))
        self.store = MetadataStore(str(tmp_path / "metadata"), http=self.http)
        self.rank_table = RankTable()
        self.engine = ProgressionEngine(self.rank_table, draw=lambda: self.roll)
        self.verifier = CollectionVerifier(self.ledger, authority=AUTHORITY)
        self.publisher = PublicationPipeline(
            self.store, self.storage, self.ledger, self.keystore, self.database, uri_template=URI_TEMPLATE
        )
        self.cooldown = CooldownPolicy(self.database, hours=cooldown_hours, basis=cooldown_basis)
        self.orchestrator = Orchestrator(
            self.verifier, self.store, self.engine, self.publisher, self.database, cooldown=self.cooldown
        )
        self.tasks = TaskService(self.database, self.verifier, self.store, self.rank_table, cooldown=self.cooldown)
        self.webhooks = WebhookHandler(self.ledger, self.orchestrator, self.database, secret=WEBHOOK_SECRET)
        self.reconciler = Reconciler(self.ledger, self.publisher, self.database)
        self.account = str(Keypair().pubkey())
        self._txs = count(1)

    @classmethod
    async def create(cls, tmp_path, **kwargs) -> "Harness":
        harness = cls(tmp_path, **kwargs)
        await harness.database.initialize()
        return harness

    async def close(self):
        await self.http.aclose()

    def _serve(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in self.documents:
            return httpx.Response(200, json=self.documents[url])
        if request.url.host == "ipfs.test":
            cid = request.url.path.split("/")[2]
            if cid in self.storage.files:
                return httpx.Response(200, content=self.storage.files[cid])
        return httpx.Response(404, json={"error": "not found"})

    def add_token(self, rank: str = "Genin", attributes: Optional[list] = None, creators: Optional[list[str]] = None) -> str:
        """Register a token on the fake ledger with its off-chain document."""
        mint = str(Keypair().pubkey())
        uri = f"https://arweave.test/{mint}.json"
        self.documents[uri] = rank_document(rank, attributes)
        self.ledger.metadata[mint] = make_token_metadata(mint, uri, creators)
        return mint

    async def paid_task(self, mint: str):
        task = await self.tasks.create_task(self.account, mint)
        payment = await self.tasks.create_payment(self.account, task.id)
        return task, payment

    def next_tx(self) -> str:
        return f"fee-tx-{next(self._txs)}"

    async def confirm(self, payment_id: int, tx_id: Optional[str] = None) -> dict:
        """Deliver a signed payment confirmation to the webhook handler."""
        tx_id = tx_id or self.next_tx()
        raw = json.dumps({"payment_id": payment_id, "tx_id": tx_id}).encode()
        return await self.webhooks.process_payment(
            PaymentReceive(payment_id=payment_id, tx_id=tx_id),
            sign_webhook_payload(raw, WEBHOOK_SECRET),
            raw,
        )

    async def current_rank(self, mint: str) -> str:
        """Rank in the document the token's on-chain URI points at."""
        metadata = await self.ledger.get_metadata(mint)
        document = await self.store.fetch(metadata.uri)
        return document.attributes[0].value
