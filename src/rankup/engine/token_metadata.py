"""Metaplex token metadata: account decoding and URI update instruction.

Only the parts of the Token Metadata program the service touches are
covered: reading a ``MetadataV1`` account and building
``UpdateMetadataAccountV2`` for a new URI.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

TOKEN_METADATA_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")

METADATA_V1_KEY = 4
UPDATE_METADATA_ACCOUNT_V2 = 15


class MetadataDecodeError(ValueError):
    """Account data is not a decodable metadata account."""


@dataclass(frozen=True)
class Creator:
    address: Pubkey
    verified: bool
    share: int


@dataclass(frozen=True)
class Collection:
    verified: bool
    key: Pubkey


@dataclass(frozen=True)
class Uses:
    use_method: int
    remaining: int
    total: int


@dataclass(frozen=True)
class TokenMetadata:
    update_authority: Pubkey
    mint: Pubkey
    name: str
    symbol: str
    uri: str
    seller_fee_basis_points: int
    creators: list[Creator] = field(default_factory=list)
    primary_sale_happened: bool = False
    is_mutable: bool = True
    edition_nonce: Optional[int] = None
    token_standard: Optional[int] = None
    collection: Optional[Collection] = None
    uses: Optional[Uses] = None

    @property
    def creator_addresses(self) -> list[str]:
        return [str(creator.address) for creator in self.creators]

    def with_uri(self, uri: str) -> "TokenMetadata":
        return replace(self, uri=uri)


def find_metadata_pda(mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [b"metadata", bytes(TOKEN_METADATA_PROGRAM_ID), bytes(mint)],
        TOKEN_METADATA_PROGRAM_ID,
    )[0]


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    @property
    def exhausted(self) -> bool:
        return self.offset >= len(self.data)

    def take(self, size: int) -> bytes:
        if self.offset + size > len(self.data):
            raise MetadataDecodeError(f"Unexpected end of data at offset {self.offset}")
        chunk = self.data[self.offset : self.offset + size]
        self.offset += size
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2), "little")

    def u32(self) -> int:
        return int.from_bytes(self.take(4), "little")

    def u64(self) -> int:
        return int.from_bytes(self.take(8), "little")

    def flag(self) -> bool:
        return self.u8() == 1

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(32))

    def string(self) -> str:
        raw = self.take(self.u32())
        try:
            # On-chain strings are padded to a fixed width with NULs
            return raw.decode("utf-8").rstrip("\x00")
        except UnicodeDecodeError as e:
            raise MetadataDecodeError(f"Invalid UTF-8 string: {e}") from e

    def option(self, read):
        # Trailing optional fields are absent on accounts written by older program versions
        if self.exhausted:
            return None
        return read() if self.u8() == 1 else None


def decode_metadata(data: bytes) -> TokenMetadata:
    """Decode a ``MetadataV1`` account.

    Raises:
        MetadataDecodeError: If the data is not a metadata account.
    """
    reader = _Reader(bytes(data))
    key = reader.u8()
    if key != METADATA_V1_KEY:
        raise MetadataDecodeError(f"Unexpected account key {key}")

    update_authority = reader.pubkey()
    mint = reader.pubkey()
    name = reader.string()
    symbol = reader.string()
    uri = reader.string()
    seller_fee = reader.u16()

    def read_creators() -> list[Creator]:
        return [Creator(reader.pubkey(), reader.flag(), reader.u8()) for _ in range(reader.u32())]

    creators = reader.option(read_creators) or []
    primary_sale_happened = reader.flag()
    is_mutable = reader.flag()
    edition_nonce = reader.option(reader.u8)
    token_standard = reader.option(reader.u8)
    collection = reader.option(lambda: Collection(reader.flag(), reader.pubkey()))
    uses = reader.option(lambda: Uses(reader.u8(), reader.u64(), reader.u64()))

    return TokenMetadata(
        update_authority=update_authority,
        mint=mint,
        name=name,
        symbol=symbol,
        uri=uri,
        seller_fee_basis_points=seller_fee,
        creators=creators,
        primary_sale_happened=primary_sale_happened,
        is_mutable=is_mutable,
        edition_nonce=edition_nonce,
        token_standard=token_standard,
        collection=collection,
        uses=uses,
    )


def _string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return len(raw).to_bytes(4, "little") + raw


def _option(value, encode) -> bytes:
    return b"\x00" if value is None else b"\x01" + encode(value)


def _creators(creators: list[Creator]) -> bytes:
    out = len(creators).to_bytes(4, "little")
    for creator in creators:
        out += bytes(creator.address) + bytes([1 if creator.verified else 0, creator.share])
    return out


def encode_data_v2(metadata: TokenMetadata) -> bytes:
    """Serialize the ``DataV2`` portion of a metadata account."""
    return (
        _string(metadata.name)
        + _string(metadata.symbol)
        + _string(metadata.uri)
        + metadata.seller_fee_basis_points.to_bytes(2, "little")
        + _option(metadata.creators or None, _creators)
        + _option(metadata.collection, lambda c: bytes([1 if c.verified else 0]) + bytes(c.key))
        + _option(
            metadata.uses,
            lambda u: bytes([u.use_method]) + u.remaining.to_bytes(8, "little") + u.total.to_bytes(8, "little"),
        )
    )


def build_update_uri_instruction(metadata: TokenMetadata, new_uri: str, authority: Pubkey) -> Instruction:
    """Build ``UpdateMetadataAccountV2`` replacing only the URI.

    Update authority, primary sale flag and mutability are left unchanged.
    """
    data = (
        bytes([UPDATE_METADATA_ACCOUNT_V2])
        + _option(metadata.with_uri(new_uri), encode_data_v2)
        + b"\x00"  # new update authority
        + b"\x00"  # primary sale happened
        + b"\x00"  # is mutable
    )
    metas = [
        AccountMeta(pubkey=find_metadata_pda(metadata.mint), is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_METADATA_PROGRAM_ID, data=data, accounts=metas)
