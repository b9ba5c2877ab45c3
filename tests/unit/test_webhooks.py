"""Unit tests for payment webhook processing (idempotency and anti-replay)."""

import asyncio
import json

import httpx
import pytest

from rankup.errors import ConfirmationTimeout
from rankup.models import PaymentReceive


@pytest.mark.unit
class TestPaymentWebhook:
    """Test authentication, confirmation and single-claim guarantees."""

    async def test_invalid_signature_rejected(self, harness):
        mint = harness.add_token()
        _, payment = await harness.paid_task(mint)
        raw = json.dumps({"payment_id": payment.id, "tx_id": "fee-tx"}).encode()

        result = await harness.webhooks.process_payment(
            PaymentReceive(payment_id=payment.id, tx_id="fee-tx"), "0" * 64, raw
        )

        assert result["status"] == "error"
        assert result["code"] == "invalid_signature"
        assert (await harness.database.get_payment(payment.id)).success is False

    async def test_unknown_payment(self, harness):
        result = await harness.confirm(404)
        assert result["code"] == "payment_not_found"

    async def test_duplicate_webhook_is_noop(self, harness):
        mint = harness.add_token("Genin")
        _, payment = await harness.paid_task(mint)

        first = await harness.confirm(payment.id, "fee-tx-1")
        second = await harness.confirm(payment.id, "fee-tx-1")

        assert first["status"] == "success"
        assert second["status"] == "success"
        assert second["message"] == "Payment already processed (idempotent)"
        assert second["rankup_success"] is True
        assert len(harness.storage.uploads) == 1
        assert len(await harness.database.list_history(harness.account)) == 1

    async def test_failed_run_replay_is_noop(self, harness):
        mint = harness.add_token("Genin")
        _, payment = await harness.paid_task(mint)
        harness.ledger.commit_error = RuntimeError("rpc down")
        await harness.confirm(payment.id, "fee-tx-1")

        harness.ledger.commit_error = None
        replay = await harness.confirm(payment.id, "fee-tx-1")

        assert replay["status"] == "success"
        assert replay["rankup_success"] is True
        assert replay["error"] == "commit_failed"
        assert harness.ledger.submitted == []

    async def test_concurrent_duplicates_run_once(self, harness):
        mint = harness.add_token("Genin")
        _, payment = await harness.paid_task(mint)

        results = await asyncio.gather(*(harness.confirm(payment.id, "fee-tx-1") for _ in range(3)))

        assert any(r["status"] == "success" for r in results)
        assert all(r["status"] in ("success", "processing") for r in results)
        assert len(harness.storage.uploads) == 1
        assert len(await harness.database.list_history(harness.account)) == 1

    async def test_transaction_cannot_pay_two_tasks(self, harness):
        _, first = await harness.paid_task(harness.add_token())
        _, second = await harness.paid_task(harness.add_token())

        assert (await harness.confirm(first.id, "fee-tx-shared"))["status"] == "success"
        result = await harness.confirm(second.id, "fee-tx-shared")

        assert result["code"] == "payment_not_confirmed"
        assert (await harness.database.get_payment(second.id)).success is False
        assert len(await harness.database.list_history(harness.account)) == 1

    async def test_confirmation_timeout(self, harness):
        _, payment = await harness.paid_task(harness.add_token())
        harness.ledger.confirmations["fee-tx-slow"] = ConfirmationTimeout("not confirmed in time")

        result = await harness.confirm(payment.id, "fee-tx-slow")

        assert result["code"] == "confirmation_timeout"
        assert result["retryable"] is True
        assert (await harness.database.get_payment(payment.id)).success is False

        # Provider retries once the transaction lands
        harness.ledger.confirmations["fee-tx-slow"] = True
        assert (await harness.confirm(payment.id, "fee-tx-slow"))["status"] == "success"

    async def test_unreachable_ledger_is_retryable(self, harness):
        _, payment = await harness.paid_task(harness.add_token())
        harness.ledger.confirmations["fee-tx-net"] = httpx.ConnectError("connection refused")

        result = await harness.confirm(payment.id, "fee-tx-net")

        assert result["status"] == "error"
        assert result["code"] == "ledger_unavailable"
        assert result["retryable"] is True
        assert (await harness.database.get_payment(payment.id)).success is False

    async def test_failed_transaction_not_confirmed(self, harness):
        _, payment = await harness.paid_task(harness.add_token())
        harness.ledger.confirmations["fee-tx-bad"] = False

        result = await harness.confirm(payment.id, "fee-tx-bad")

        assert result["code"] == "payment_not_confirmed"
        assert (await harness.database.get_payment(payment.id)).success is False
        assert harness.storage.uploads == []

    async def test_second_payment_for_paid_task(self, harness):
        task, first = await harness.paid_task(harness.add_token())
        second = await harness.database.create_payment(first.model_copy(update={"id": None}))

        await harness.confirm(first.id)
        result = await harness.confirm(second.id)

        assert result["code"] == "task_already_finalized"
        assert (await harness.database.get_payment(second.id)).success is False
