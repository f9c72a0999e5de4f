from typing import Any

import pytest

from knowledge_companion.config import KnowledgeStoreConfig
from knowledge_companion.exceptions import KnowledgeStoreError
from knowledge_companion.knowledge_store import KnowledgeStore
from knowledge_companion.tools.knowledge import (
    CascadeBrainstormTool,
    ClaimLegacyDataTool,
    TkgSearchTool,
    TkgStoreTool,
)
from knowledge_companion.wama import MemoryScorer


class FakeEmbedder:
    provider_id = "fake"
    model = "fake-embed"

    async def embed(self, text: str) -> list[float]:
        return [0.0, 1.0]


class FakeVectorStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.points: dict[str, dict[str, Any]] = {}
        self.legacy = [{"id": 7, "payload": {"user_id": "guest"}}]
        self.migrated: list[Any] = []

    async def ensure_collection(self, dimension: int) -> None:
        if self.fail:
            raise KnowledgeStoreError("Qdrant URL not configured")

    async def upsert(self, point_id: str, vector: list[float], payload: dict[str, Any]) -> None:
        self.points[point_id] = payload

    async def search(self, vector: list[float], limit: int, owner: str) -> list[dict[str, Any]]:
        return [
            {"id": point_id, "score": 0.8, "payload": payload}
            for point_id, payload in self.points.items()
            if payload["user_id"] == owner
        ]

    async def scroll_unowned(self, offset: Any = None) -> tuple[list[dict[str, Any]], Any]:
        return list(self.legacy), None

    async def set_payload(self, point_id: Any, payload: dict[str, Any]) -> None:
        self.migrated.append(point_id)


def _store(fail: bool = False) -> tuple[KnowledgeStore, FakeVectorStore]:
    vectors = FakeVectorStore(fail)
    return KnowledgeStore(KnowledgeStoreConfig(dimension=2), FakeEmbedder(), vectors, MemoryScorer()), vectors


@pytest.mark.asyncio
async def test_store_then_search_round_trip_for_owner():
    store, _ = _store()
    store_tool = TkgStoreTool(store, "ada")
    search_tool = TkgSearchTool(store, "ada")

    stored = await store_tool.execute(content="I am learning Rust", node_type="LEARNING")
    found = await search_tool.execute(query="rust", trust_threshold=0.9)

    assert stored.success is True
    assert stored.data["decision"] == "IMMEDIATE_CASCADE"
    assert "WAMA: IMMEDIATE_CASCADE" in stored.data["message"]
    assert found.data["count"] == 1
    hit = found.data["results"][0]
    assert hit["content"] == "I am learning Rust"
    assert hit["node_type"] == "LEARNING"
    assert hit["wama_decision"] == "IMMEDIATE_CASCADE"


@pytest.mark.asyncio
async def test_store_reports_wama_rejection():
    store, vectors = _store()

    result = await TkgStoreTool(store).execute(content="hello there", node_type="FACT")

    assert result.success is False
    assert result.error.startswith("WAMA Decision: LET_FADE (score: 0.00)")
    assert result.data["decision"] == "LET_FADE"
    assert result.data["recommendation"] == "Content was filtered out as low-value"
    assert vectors.points == {}


@pytest.mark.asyncio
async def test_store_reports_backend_failure():
    store, _ = _store(fail=True)

    result = await TkgStoreTool(store).execute(content="I am learning Rust", node_type="FACT")

    assert result.error == "TKG store failed: Qdrant URL not configured"


@pytest.mark.asyncio
async def test_search_reports_backend_failure():
    store, _ = _store(fail=True)

    result = await TkgSearchTool(store).execute(query="anything")

    assert result.error == "TKG search failed: Qdrant URL not configured"


@pytest.mark.asyncio
async def test_claim_legacy_data_refuses_guest():
    store, _ = _store()

    result = await ClaimLegacyDataTool(store, "guest").execute()

    assert result.error == "Cannot claim data while logged in as guest. Please log in first."


@pytest.mark.asyncio
async def test_claim_legacy_data_dry_run_then_confirmed_migration():
    store, vectors = _store()
    tool = ClaimLegacyDataTool(store, "ada")

    dry = await tool.execute()
    refused = await tool.execute(dry_run=False)
    migrated = await tool.execute(dry_run=False, confirm=True)

    assert dry.data["count"] == 1
    assert dry.data["message"].startswith("Dry run: found 1 guest/legacy memories")
    assert refused.error.startswith("Refusing to migrate without explicit confirmation.")
    assert migrated.data["message"] == "Successfully migrated 1 memories to user ada"
    assert vectors.migrated == [7]


@pytest.mark.asyncio
async def test_cascade_brainstorm_tool_applies_overrides():
    result = await CascadeBrainstormTool().execute(trigger="Study app", max_depth=1)

    assert result.success is True
    assert result.data["termination_reason"] == "max_depth_reached"
    assert result.data["all_thoughts"] == ["Study app"]
    assert result.data["message"] == "RCA cascade completed! Explored 1 depths, processed 1 thoughts"
