"""Unit tests for reconciling interrupted publications."""

import pytest

from rankup.errors import CommitFailed, CooldownActive


async def interrupted_publication(harness):
    mint = harness.add_token("Genin")
    _, payment = await harness.paid_task(mint)
    harness.ledger.commit_error = RuntimeError("blockhash expired")
    await harness.confirm(payment.id)
    harness.ledger.commit_error = None
    return mint


@pytest.mark.unit
class TestReconciler:
    """Test re-commit of stale on-chain URIs."""

    async def test_stale_uri_recommitted_without_reupload(self, harness):
        mint = await interrupted_publication(harness)

        assert await harness.reconciler.reconcile(mint) == "committed"

        publication = await harness.database.latest_publication(mint)
        assert publication.status == "committed"
        assert len(harness.storage.uploads) == 1
        assert (await harness.ledger.get_metadata(mint)).uri == publication.uri
        assert await harness.current_rank(mint) == "Chuunin"

    async def test_reconciled_advance_counts_towards_cooldown(self, harness):
        mint = await interrupted_publication(harness)

        await harness.reconciler.reconcile(mint)

        assert await harness.current_rank(mint) == "Chuunin"
        history = await harness.database.list_history_for_mint(mint)
        assert [(h.success, h.error) for h in history] == [(True, "commit_failed")]
        with pytest.raises(CooldownActive):
            await harness.tasks.check_cooldown(mint)

    async def test_commit_that_landed_is_recorded(self, harness):
        mint = await interrupted_publication(harness)
        publication = await harness.database.latest_publication(mint)
        # The update went through even though the caller saw a failure
        harness.ledger.metadata[mint] = harness.ledger.metadata[mint].with_uri(publication.uri)

        assert await harness.reconciler.reconcile(mint) == "committed"
        assert harness.ledger.submitted == []
        assert (await harness.database.get_publication(publication.id)).status == "committed"

    async def test_nothing_to_reconcile(self, harness):
        mint = harness.add_token("Genin")
        assert await harness.reconciler.reconcile(mint) is None

    async def test_reconcile_failure_propagates(self, harness):
        mint = await interrupted_publication(harness)
        harness.ledger.commit_error = RuntimeError("still down")
        with pytest.raises(CommitFailed):
            await harness.reconciler.reconcile(mint)

    async def test_reconcile_pending(self, harness):
        first = await interrupted_publication(harness)
        second = await interrupted_publication(harness)

        results = await harness.reconciler.reconcile_pending()

        assert results == {first: "committed", second: "committed"}
        assert await harness.database.list_uncommitted_publications() == []
        assert await harness.reconciler.reconcile_pending() == {}

    async def test_reconcile_pending_reports_failures(self, harness):
        mint = await interrupted_publication(harness)
        harness.ledger.commit_error = RuntimeError("still down")

        assert await harness.reconciler.reconcile_pending() == {mint: "commit_failed"}
