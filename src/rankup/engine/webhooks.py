"""Payment confirmation webhook handling.

Authenticates the callback, confirms the fee transaction on-chain, claims the
payment exactly once, and hands the task to the orchestrator.
"""

import hashlib
import hmac
from typing import Any, Dict

import httpx
from solana.exceptions import SolanaRpcException

from ..config import config
from ..errors import (
    ConfirmationTimeout,
    LedgerUnavailable,
    PaymentNotConfirmed,
    PaymentNotFound,
    RankupError,
    TaskAlreadyFinalized,
    TaskNotFound,
)
from ..logging_utils import LogContext, get_logger
from ..models import PaymentReceive
from .ledger_client import LedgerError

logger = get_logger(__name__)


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify an HMAC-SHA256 hex signature over the raw webhook body."""
    expected_signature = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature)


def sign_webhook_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class WebhookHandler:
    """Turns payment confirmation callbacks into rank-up runs."""

    def __init__(self, ledger, orchestrator, database, secret: str = None):
        """Initialize webhook handler.

        Args:
            ledger: Ledger client used to confirm the fee transaction.
            orchestrator: Orchestrator running the pipeline.
            database: Ledger database.
            secret: Shared HMAC secret. Defaults to config.webhook_secret.
        """
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.database = database
        self.secret = secret or config.webhook_secret

    async def process_payment(
        self,
        receive: PaymentReceive,
        signature: str,
        raw_payload: bytes,
    ) -> Dict[str, Any]:
        """Process a payment confirmation callback.

        Implements:
        1. Signature verification (authenticity)
        2. Idempotency (a finalized run is reported, never repeated)
        3. Bounded on-chain confirmation of the fee transaction
        4. Single claim of the payment (anti-replay)
        5. Rank-up orchestration

        Returns:
            Dict with status and details.
        """
        logger.info(f"Processing payment webhook for payment {receive.payment_id}")

        if not verify_webhook_signature(raw_payload, signature or "", self.secret):
            logger.error(f"Invalid webhook signature for payment {receive.payment_id}")
            return {"status": "error", "code": "invalid_signature", "error": "Invalid signature"}

        payment = await self.database.get_payment(receive.payment_id)
        if payment is None:
            return PaymentNotFound("Payment does not exist").to_dict()

        task = await self.database.get_task(payment.task_id)
        if task is None:
            return TaskNotFound("Task does not exist").to_dict()

        with LogContext(mint_address=task.mint_address):
            recorded = await self.database.get_history_for_payment(payment.id)
            if recorded is not None:
                logger.info(f"Payment {payment.id} already finalized (idempotency): success={recorded.success}")
                return {
                    "status": "success",
                    "message": "Payment already processed (idempotent)",
                    "payment_id": payment.id,
                    "task_id": task.id,
                    "rankup_success": recorded.success,
                    "error": recorded.error,
                }

            if payment.success:
                if payment.tx == receive.tx_id:
                    return {
                        "status": "processing",
                        "message": "Payment is currently being processed",
                        "payment_id": payment.id,
                    }
                return PaymentNotConfirmed("Payment already confirmed by another transaction").to_dict()

            if task.finalized:
                logger.warning(f"Payment {payment.id} arrived for task {task.id}, which already ran")
                return TaskAlreadyFinalized(f"Task {task.id} has already been finalized").to_dict()

            try:
                confirmed = await self.ledger.confirm_transaction(receive.tx_id)
            except ConfirmationTimeout as e:
                return e.to_dict()
            except ValueError as e:
                logger.error(f"Malformed transaction signature {receive.tx_id!r}: {e}")
                return PaymentNotConfirmed("Malformed transaction signature").to_dict()
            except (httpx.HTTPError, SolanaRpcException, LedgerError) as e:
                logger.error(f"Ledger unreachable while confirming {receive.tx_id}: {e}")
                return LedgerUnavailable("Could not reach the ledger to confirm the transaction").to_dict()

            if not confirmed:
                return PaymentNotConfirmed(f"Transaction {receive.tx_id} failed on-chain").to_dict()

            if not await self.database.claim_payment(payment.id, receive.tx_id):
                current = await self.database.get_payment(payment.id)
                if current.success and current.tx == receive.tx_id:
                    logger.warning(f"Payment {payment.id} claimed by another request")
                    return {
                        "status": "processing",
                        "message": "Payment is being processed by another request",
                        "payment_id": payment.id,
                    }
                # Either the transaction already paid for something else or the task has another payment
                return PaymentNotConfirmed(f"Transaction {receive.tx_id} cannot confirm this payment").to_dict()

            claimed = payment.model_copy(update={"success": True, "tx": receive.tx_id})
            try:
                outcome = await self.orchestrator.execute(task, claimed)
            except RankupError as e:
                return e.to_dict()

            if outcome.error:
                return {
                    "status": "error",
                    "code": outcome.error,
                    "error": outcome.detail,
                    "retryable": outcome.retryable,
                    "rankup_success": outcome.success,
                    "payment_id": payment.id,
                    "task_id": task.id,
                    "message": "Rank-up did not complete; the payment is kept. See history for the recorded outcome.",
                }

            return {
                "status": "success",
                "message": "Payment successful",
                "payment_id": payment.id,
                "task_id": task.id,
                "rankup_success": outcome.success,
                "previous_rank": outcome.previous_rank,
                "new_rank": outcome.new_rank,
                "uri": outcome.uri,
            }
