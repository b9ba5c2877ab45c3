"""Reconciliation sweep.

Finishes publications whose document was uploaded but whose on-chain URI
update never completed. Safe to run repeatedly, e.g. from cron.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rankup.config import config, validate_config_for_service
from rankup.database import db
from rankup.engine.keystore import Keystore
from rankup.engine.ledger_client import LedgerClient
from rankup.engine.metadata_store import MetadataStore
from rankup.engine.publication import PublicationPipeline
from rankup.engine.reconciliation import Reconciler
from rankup.engine.storage_client import StorageClient
from rankup.logging_utils import LogContext, get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main() -> int:
    validate_config_for_service("publisher")
    await db.initialize()

    ledger = LedgerClient()
    store = MetadataStore()
    storage = StorageClient()
    publisher = PublicationPipeline(store, storage, ledger, Keystore(), db)
    reconciler = Reconciler(ledger, publisher, db)

    try:
        with LogContext():
            results = await reconciler.reconcile_pending()
    finally:
        await ledger.close()
        await store.close()
        await storage.close()

    failed = {mint: status for mint, status in results.items() if status != "committed"}
    for mint, status in failed.items():
        logger.error(f"{mint} still uncommitted: {status}")
    logger.info(f"Reconciliation done: {len(results) - len(failed)} committed, {len(failed)} failed")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
