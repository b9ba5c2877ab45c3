"""Unit tests for the off-chain metadata store."""

import json

import httpx
import pytest

from fakes import rank_document
from rankup.engine.metadata_store import MetadataStore
from rankup.errors import FetchFailed, NoRankAttribute, WriteFailed

URI = "https://arweave.test/doc.json"


def store_serving(tmp_path, handler) -> MetadataStore:
    return MetadataStore(str(tmp_path / "metadata"), http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.unit
class TestFetch:
    """Test fetching and validating documents."""

    async def test_fetch_document(self, tmp_path):
        store = store_serving(tmp_path, lambda request: httpx.Response(200, json=rank_document("Chuunin")))
        document = await store.fetch(URI)
        assert document.rank_attribute().value == "Chuunin"
        assert document.attributes[1].trait_type == "Clan"

    async def test_unknown_keys_preserved(self, tmp_path):
        body = rank_document("Genin", animation_url="https://arweave.test/1042.mp4")
        store = store_serving(tmp_path, lambda request: httpx.Response(200, json=body))
        document = await store.fetch(URI)
        dumped = json.loads(document.model_dump_json())
        assert dumped["animation_url"] == "https://arweave.test/1042.mp4"

    async def test_http_error(self, tmp_path):
        store = store_serving(tmp_path, lambda request: httpx.Response(500))
        with pytest.raises(FetchFailed):
            await store.fetch(URI)

    async def test_transport_error(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = store_serving(tmp_path, handler)
        with pytest.raises(FetchFailed):
            await store.fetch(URI)

    async def test_malformed_document(self, tmp_path):
        store = store_serving(tmp_path, lambda request: httpx.Response(200, json={"name": "broken"}))
        with pytest.raises(FetchFailed):
            await store.fetch(URI)

    async def test_missing_rank_attribute(self, tmp_path):
        body = rank_document(attributes=[{"trait_type": "Clan", "value": "Hyuga"}])
        store = store_serving(tmp_path, lambda request: httpx.Response(200, json=body))
        with pytest.raises(NoRankAttribute):
            await store.fetch(URI)


@pytest.mark.unit
class TestPersist:
    """Test the local working copy."""

    async def test_persist_then_load(self, tmp_path):
        store = store_serving(tmp_path, lambda request: httpx.Response(200, json=rank_document("Genin")))
        document = await store.fetch(URI)
        await store.persist("mint-a", document)

        data = await store.load("mint-a")
        assert json.loads(data)["attributes"][0]["value"] == "Genin"
        assert (await store.load_document("mint-a")) == document

    async def test_persist_replaces_previous_copy(self, tmp_path):
        store = store_serving(tmp_path, lambda request: httpx.Response(200, json=rank_document("Genin")))
        document = await store.fetch(URI)
        await store.persist("mint-a", document)
        promoted = document.model_copy(update={"attributes": [document.attributes[0].model_copy(update={"value": "Chuunin"})]})
        await store.persist("mint-a", promoted)

        assert (await store.load_document("mint-a")).attributes[0].value == "Chuunin"
        # No temporary files left behind
        assert [p.name for p in (tmp_path / "metadata").iterdir()] == ["mint-a.json"]

    async def test_load_missing_copy(self, tmp_path):
        store = store_serving(tmp_path, lambda request: httpx.Response(404))
        with pytest.raises(WriteFailed):
            await store.load("never-persisted")

    async def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = MetadataStore(str(blocker / "metadata"), http=httpx.AsyncClient())
        document = await store_serving(
            tmp_path, lambda request: httpx.Response(200, json=rank_document())
        ).fetch(URI)
        with pytest.raises(WriteFailed):
            await store.persist("mint-a", document)
