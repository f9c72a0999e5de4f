"""Long-term knowledge store gated by WAMA admission scoring.

The store owns three collaborators passed in explicitly: an embedder
(text -> vector), a vector store (upsert/search/scroll) and the memory
scorer. Content is scored first; rejected content never reaches the
embedding provider.
"""

import math
import uuid
from datetime import UTC, datetime
from typing import Any, Iterable, Protocol

import httpx

from knowledge_companion.config import KnowledgeStoreConfig
from knowledge_companion.exceptions import (
    EmbeddingError,
    KnowledgeStoreError,
    MemoryRejectedError,
)
from knowledge_companion.logging import get_logger
from knowledge_companion.wama import MemoryScorer, SaveDecision

log = get_logger(__name__)

NODE_TYPES = (
    "FACT",
    "CONCEPT",
    "MEMORY",
    "LEARNING",
    "RELATIONSHIP",
    "INSIGHT",
    "USER_INPUT",
    "AI_RESPONSE",
)
LEGACY_OWNER = "guest"
SCROLL_PAGE_SIZE = 100


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _normalize_embedding(values: Iterable[float]) -> list[float]:
    vector = [float(v) if isinstance(v, (float, int)) and math.isfinite(float(v)) else 0.0 for v in values]
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 1e-12:
        return vector
    return [v / norm for v in vector]


def normalize_node_type(value: str | None) -> str:
    """Uppercase known node types; anything else becomes CONCEPT."""
    candidate = (value or "").strip().upper()
    return candidate if candidate in NODE_TYPES else "CONCEPT"


class Embedder(Protocol):
    provider_id: str
    model: str

    async def embed(self, text: str) -> list[float]:
        """Return one embedding for text."""


class VectorStore(Protocol):
    async def ensure_collection(self, dimension: int) -> None: ...

    async def upsert(self, point_id: str, vector: list[float], payload: dict[str, Any]) -> None: ...

    async def search(
        self, vector: list[float], limit: int, owner: str
    ) -> list[dict[str, Any]]: ...

    async def scroll_unowned(self, offset: Any = None) -> tuple[list[dict[str, Any]], Any]: ...

    async def set_payload(self, point_id: Any, payload: dict[str, Any]) -> None: ...


class _HttpEmbedder:
    """Shared httpx plumbing for hosted embedding APIs."""

    provider_id = ""

    def __init__(self, model: str, api_key: str, base_url: str, max_chars: int = 8000, timeout: float = 30.0):
        self.model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._max_chars = max(1, int(max_chars))
        self.client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _truncate(self, text: str) -> str:
        return text[: self._max_chars]

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self._api_key:
            raise EmbeddingError(f"{self.provider_id} embedding API key not configured")
        try:
            response = await self.client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            if not response.is_success:
                raise EmbeddingError(f"{self.provider_id} API error: {response.text}")
            return response.json()
        except EmbeddingError:
            raise
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Failed to call {self.provider_id} API: {e}")
        except ValueError as e:
            raise EmbeddingError(f"Failed to parse {self.provider_id} response: {e}")

    async def close(self) -> None:
        await self.client.aclose()


class CohereEmbedder(_HttpEmbedder):
    provider_id = "cohere"

    def __init__(self, api_key: str, model: str = "embed-v4.0", base_url: str = "", **kwargs: Any):
        super().__init__(model, api_key, base_url or "https://api.cohere.ai/v1", **kwargs)

    async def embed(self, text: str) -> list[float]:
        payload = await self._post(
            f"{self._base_url}/embed",
            {
                "model": self.model,
                "texts": [self._truncate(text)],
                "input_type": "search_document",
            },
        )
        embeddings = payload.get("embeddings")
        if not isinstance(embeddings, list) or not embeddings or not embeddings[0]:
            raise EmbeddingError("No embedding returned from Cohere")
        return _normalize_embedding(embeddings[0])


class OpenAIEmbedder(_HttpEmbedder):
    provider_id = "openai"

    def __init__(self, api_key: str, model: str = "text-embedding-3-small", base_url: str = "", **kwargs: Any):
        super().__init__(model, api_key, base_url or "https://api.openai.com/v1", **kwargs)

    async def embed(self, text: str) -> list[float]:
        payload = await self._post(
            f"{self._base_url}/embeddings",
            {"model": self.model, "input": self._truncate(text)},
        )
        data = payload.get("data")
        if not isinstance(data, list) or not data:
            raise EmbeddingError("No embedding data returned from OpenAI")
        vector = data[0].get("embedding") if isinstance(data[0], dict) else None
        if not vector:
            raise EmbeddingError("Empty embedding returned from OpenAI")
        return _normalize_embedding(vector)


def create_embedder(config: KnowledgeStoreConfig) -> Embedder:
    """Build the configured embedding provider."""
    common = {"max_chars": config.max_input_chars, "timeout": config.timeout}
    if config.embedding_provider == "openai":
        model = config.embedding_model if config.embedding_model != "embed-v4.0" else "text-embedding-3-small"
        return OpenAIEmbedder(config.embedding_api_key, model, config.embedding_base_url, **common)
    return CohereEmbedder(config.embedding_api_key, config.embedding_model, config.embedding_base_url, **common)


class QdrantVectorStore:
    """Qdrant REST client covering the calls the knowledge store needs."""

    def __init__(self, base_url: str, collection: str, api_key: str = "", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.collection = collection
        self._api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Api-Key"] = self._api_key
        return headers

    async def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.base_url:
            raise KnowledgeStoreError("Qdrant URL not configured")
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, json=body, headers=self._headers())
            if not response.is_success:
                raise KnowledgeStoreError(f"Qdrant error {response.status_code}: {response.text}")
            return response.json() if response.content else {}
        except KnowledgeStoreError:
            raise
        except httpx.HTTPError as e:
            raise KnowledgeStoreError(f"Qdrant request failed: {e}")
        except ValueError as e:
            raise KnowledgeStoreError(f"Failed to parse Qdrant response: {e}")

    async def ensure_collection(self, dimension: int) -> None:
        """Create the collection and owner index when missing."""
        listing = await self._request("GET", "/collections")
        names = {
            str(item.get("name"))
            for item in (listing.get("result") or {}).get("collections", [])
            if isinstance(item, dict)
        }
        if self.collection not in names:
            log.info("Creating Qdrant collection", collection=self.collection, dimension=dimension)
            await self._request(
                "PUT",
                f"/collections/{self.collection}",
                {"vectors": {"size": dimension, "distance": "Cosine"}},
            )
        try:
            await self._request(
                "PUT",
                f"/collections/{self.collection}/index",
                {"field_name": "user_id", "field_schema": "keyword"},
            )
        except KnowledgeStoreError as e:
            log.warning("Failed to create user_id index", collection=self.collection, error=str(e))

    async def upsert(self, point_id: str, vector: list[float], payload: dict[str, Any]) -> None:
        await self._request(
            "PUT",
            f"/collections/{self.collection}/points",
            {"points": [{"id": point_id, "vector": vector, "payload": payload}]},
        )

    async def search(self, vector: list[float], limit: int, owner: str) -> list[dict[str, Any]]:
        data = await self._request(
            "POST",
            f"/collections/{self.collection}/points/search",
            {
                "vector": vector,
                "limit": limit,
                "with_payload": True,
                "with_vectors": False,
                "filter": {"must": [{"key": "user_id", "match": {"value": owner}}]},
            },
        )
        result = data.get("result")
        return result if isinstance(result, list) else []

    async def scroll_unowned(self, offset: Any = None) -> tuple[list[dict[str, Any]], Any]:
        """One page of points with no owner or the legacy guest owner."""
        body: dict[str, Any] = {
            "limit": SCROLL_PAGE_SIZE,
            "with_payload": True,
            "filter": {
                "should": [
                    {"is_empty": {"key": "user_id"}},
                    {"key": "user_id", "match": {"value": LEGACY_OWNER}},
                ]
            },
        }
        if offset is not None:
            body["offset"] = offset
        data = await self._request("POST", f"/collections/{self.collection}/points/scroll", body)
        result = data.get("result") or {}
        points = result.get("points") if isinstance(result, dict) else None
        next_offset = result.get("next_page_offset") if isinstance(result, dict) else None
        return (points if isinstance(points, list) else []), next_offset

    async def set_payload(self, point_id: Any, payload: dict[str, Any]) -> None:
        await self._request(
            "POST",
            f"/collections/{self.collection}/points/payload?wait=true",
            {"points": [point_id], "payload": payload},
        )

    async def close(self) -> None:
        await self.client.aclose()


class KnowledgeStore:
    """Score, embed and persist knowledge for one deployment."""

    def __init__(
        self,
        config: KnowledgeStoreConfig,
        embedder: Embedder,
        vector_store: VectorStore,
        scorer: MemoryScorer,
    ):
        self.config = config
        self.embedder = embedder
        self.vector_store = vector_store
        self.scorer = scorer
        self._connected = False

    async def connect(self) -> None:
        """Make sure the backing collection exists."""
        if self._connected:
            return
        await self.vector_store.ensure_collection(self.config.dimension)
        self._connected = True

    async def store(
        self,
        content: str,
        node_type: str | None = None,
        importance: float | None = None,
        user_id: str = LEGACY_OWNER,
    ) -> dict[str, Any]:
        """Persist content unless WAMA lets it fade.

        Raises:
            MemoryRejectedError: when the admission band is LET_FADE
            EmbeddingError / KnowledgeStoreError: on transport failures
        """
        verdict = self.scorer.evaluate(content)
        log.info(
            "WAMA decision",
            decision=verdict.decision.value,
            score=round(verdict.score, 3),
            matched=verdict.matched,
        )
        if verdict.decision is SaveDecision.LET_FADE:
            raise MemoryRejectedError(verdict.decision.value, verdict.score)
        if verdict.decision is SaveDecision.CONSIDER:
            log.warning("Low-value content, saving anyway", score=round(verdict.score, 3))

        await self.connect()
        vector = await self.embedder.embed(content)
        node_id = str(uuid.uuid4())
        payload = {
            "content": content,
            "node_type": normalize_node_type(node_type),
            "importance": 0.5 if importance is None else float(importance),
            "timestamp": _utcnow_iso(),
            "wama_decision": verdict.decision.value,
            "wama_score": verdict.score,
            "user_id": user_id,
        }
        await self.vector_store.upsert(node_id, vector, payload)
        log.info("Knowledge stored", node_id=node_id, node_type=payload["node_type"])
        return {
            "node_id": node_id,
            "decision": verdict.decision.value,
            "score": verdict.score,
        }

    async def search(self, query: str, limit: int | None = None, user_id: str = LEGACY_OWNER) -> list[dict[str, Any]]:
        """Return stored items closest to the query for one owner."""
        effective = self.config.search_default_limit if not limit else int(limit)
        effective = max(1, min(effective, self.config.search_max_limit))
        await self.connect()
        vector = await self.embedder.embed(query)
        return await self.vector_store.search(vector, effective, user_id)

    async def claim_legacy_data(self, user_id: str, dry_run: bool = True) -> int:
        """Count or reassign unowned/guest points to ``user_id``."""
        await self.connect()
        total = 0
        offset: Any = None
        while True:
            points, offset = await self.vector_store.scroll_unowned(offset)
            if dry_run:
                total += len(points)
            else:
                for point in points:
                    payload = dict(point.get("payload") or {})
                    payload["user_id"] = user_id
                    await self.vector_store.set_payload(point.get("id"), payload)
                    total += 1
            if offset is None or not points:
                break
        log.info("Legacy data claim", user_id=user_id, dry_run=dry_run, count=total)
        return total


def create_knowledge_store(config: KnowledgeStoreConfig, scorer: MemoryScorer) -> KnowledgeStore:
    """Wire the configured Qdrant store and embedder."""
    vector_store = QdrantVectorStore(
        base_url=config.qdrant_base_url(),
        collection=config.collection,
        api_key=config.qdrant_api_key,
        timeout=config.timeout,
    )
    return KnowledgeStore(config, create_embedder(config), vector_store, scorer)
