"""Centralized configuration management for the rank-up service.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the service."""

    # Ledger (Solana) Configuration
    solana_rpc_url: str = Field(default="https://api.devnet.solana.com", description="Solana RPC endpoint")
    solana_commitment: Literal["processed", "confirmed", "finalized"] = Field(default="confirmed")
    collection_authority: str = Field(
        default="Bf2jdfoFrqVS2n6eDtzzmb8cbue7B1ibcZF4QCvruqav",
        description="First creator address every token of the collection must declare",
    )
    keystore_path: str = Field(default="./keys/authority.json", description="Update authority keypair file")

    # Confirmation polling
    confirmation_timeout_seconds: float = Field(default=60.0)
    confirmation_initial_delay_seconds: float = Field(default=0.5)
    confirmation_max_delay_seconds: float = Field(default=8.0)

    # Content-addressed storage
    storage_api_url: str = Field(default="https://api.nft.storage/upload")
    storage_api_token: str = Field(default="", description="Bearer token for the storage API")
    metadata_uri_template: str = Field(default="https://nftstorage.link/ipfs/{cid}/{mint}.json")
    http_timeout_seconds: float = Field(default=30.0)

    # Local metadata cache
    metadata_dir: str = Field(default="./metadata")

    # Rank economy
    cooldown_hours: float = Field(default=12.0)
    cooldown_basis: Literal["success", "attempt"] = Field(
        default="success",
        description="Measure cooldown from the last successful rank-up or from the last attempt",
    )
    terminal_rank_policy: Literal["self", "reject"] = Field(default="self")
    rank_prices: dict[str, int] = Field(
        default_factory=lambda: {
            "Academy": 250,
            "Genin": 200,
            "Chuunin": 180,
            "Jounin": 180,
            "Special Jounin": 180,
            "Kage": 180,
        }
    )
    rank_thresholds: dict[str, int] = Field(
        default_factory=lambda: {
            "Academy": 20,
            "Genin": 50,
            "Chuunin": 70,
            "Jounin": 80,
            "Special Jounin": 90,
            "Kage": 100,
        }
    )

    # Service
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    page_size: int = Field(default=10)

    # Security
    webhook_secret: str = Field(
        default="change_me_in_production",
        description="Shared secret for HMAC webhook signatures",
    )
    jwt_secret: str = Field(default="change_me_in_production")
    jwt_ttl_minutes: int = Field(default=30)

    # Database
    database_path: str = Field(default="./rankup.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["api", "publisher"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if not config.collection_authority:
        errors.append("COLLECTION_AUTHORITY must be set")

    # The API process publishes in-process, so it needs the same credentials
    if not config.storage_api_token:
        errors.append("STORAGE_API_TOKEN must be set to upload metadata")
    if not config.keystore_path:
        errors.append("KEYSTORE_PATH must point at the update authority keypair")

    if "{cid}" not in config.metadata_uri_template:
        errors.append("METADATA_URI_TEMPLATE must contain a {cid} placeholder")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
