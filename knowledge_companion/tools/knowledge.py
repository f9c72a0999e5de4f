"""Long-term knowledge tools backed by the knowledge store."""

from typing import Any

from knowledge_companion.cascade import cascade_brainstorm
from knowledge_companion.config import CascadeConfig
from knowledge_companion.exceptions import KnowledgeStoreError, MemoryRejectedError
from knowledge_companion.knowledge_store import LEGACY_OWNER, NODE_TYPES, KnowledgeStore
from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def _format_hit(hit: dict[str, Any]) -> dict[str, Any]:
    payload = hit.get("payload") or {}
    return {
        "id": hit.get("id"),
        "score": hit.get("score"),
        "content": payload.get("content", ""),
        "node_type": payload.get("node_type", ""),
        "importance": payload.get("importance"),
        "timestamp": payload.get("timestamp"),
        "wama_decision": payload.get("wama_decision"),
    }


class _KnowledgeStoreTool(Tool):
    requires_network = True

    def __init__(self, store: KnowledgeStore, user_id: str = LEGACY_OWNER):
        self.store = store
        self.user_id = user_id or LEGACY_OWNER


class TkgSearchTool(_KnowledgeStoreTool):
    """Semantic search over stored knowledge."""

    name = "tkg_search"
    description = (
        "Search the Temporal Knowledge Graph for semantically similar knowledge and "
        "memories. Uses vector embeddings to find related information from past "
        "conversations and learning."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query to find semantically related knowledge",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of results to return (1-20, default: 5)",
            },
            "trust_threshold": {
                "type": "number",
                "description": "Minimum trust score for results (0.0-1.0, default: 0.5)",
            },
        },
        "required": ["query"],
    }

    async def execute(
        self,
        query: str,
        limit: int | None = None,
        trust_threshold: float | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        # trust_threshold is accepted for schema compatibility; stored items carry no trust score.
        try:
            hits = await self.store.search(query, limit=limit, user_id=self.user_id)
        except KnowledgeStoreError as e:
            log.error("Knowledge search failed", query=query, error=str(e))
            return ToolResult.fail(f"TKG search failed: {e}")
        results = [_format_hit(hit) for hit in hits]
        return ToolResult(
            data={
                "query": query,
                "results": results,
                "count": len(results),
                "message": "Search completed successfully",
            }
        )


class TkgStoreTool(_KnowledgeStoreTool):
    """Persist knowledge when WAMA admits it."""

    name = "tkg_store"
    description = (
        "Store important knowledge in the Temporal Knowledge Graph for future semantic "
        "search. Preserves memories with embeddings for context-aware retrieval."
    )
    parameters = {
        "type": "object",
        "properties": {
            "content": {
                "type": "string",
                "description": "The knowledge or memory to store",
            },
            "node_type": {
                "type": "string",
                "enum": list(NODE_TYPES),
                "description": "Type of knowledge node",
            },
            "importance": {
                "type": "number",
                "description": "Importance score (0.0-1.0)",
            },
        },
        "required": ["content", "node_type"],
    }

    async def execute(
        self,
        content: str,
        node_type: str = "CONCEPT",
        importance: float | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        try:
            stored = await self.store.store(
                content,
                node_type=node_type,
                importance=importance,
                user_id=self.user_id,
            )
        except MemoryRejectedError as e:
            return ToolResult.fail(
                str(e),
                decision=e.decision,
                score=e.score,
                message=f"WAMA rejected content (score: {e.score:.2f}) - not worth saving to TKG",
                recommendation="Content was filtered out as low-value",
            )
        except KnowledgeStoreError as e:
            log.error("Knowledge store failed", error=str(e))
            return ToolResult.fail(f"TKG store failed: {e}")

        return ToolResult(
            data={
                "node_id": stored["node_id"],
                "decision": stored["decision"],
                "score": stored["score"],
                "message": (
                    f"Knowledge stored successfully in TKG "
                    f"(WAMA: {stored['decision']}, score: {stored['score']:.2f})"
                ),
            }
        )


class ClaimLegacyDataTool(_KnowledgeStoreTool):
    """Move guest-owned knowledge to the signed-in user."""

    name = "claim_legacy_data"
    description = (
        "Migrate past memories/knowledge from 'guest' sessions to the current user. "
        "Defaults to dry-run unless explicitly confirmed to prevent accidental "
        "destructive migrations."
    )
    parameters = {
        "type": "object",
        "properties": {
            "dry_run": {
                "type": "boolean",
                "description": "If true, only reports how many legacy points would be migrated (default: true).",
            },
            "confirm": {
                "type": "boolean",
                "description": (
                    "Set true to actually perform the migration. If omitted/false, "
                    "the tool will not modify any data."
                ),
            },
        },
        "required": [],
    }

    async def execute(self, dry_run: bool = True, confirm: bool = False, **kwargs: Any) -> ToolResult:
        if self.user_id == LEGACY_OWNER:
            return ToolResult.fail("Cannot claim data while logged in as guest. Please log in first.")
        if not dry_run and not confirm:
            return ToolResult.fail(
                'Refusing to migrate without explicit confirmation. Re-run with {"confirm": true} '
                '(or use {"dry_run": true} first).'
            )

        try:
            count = await self.store.claim_legacy_data(self.user_id, dry_run=bool(dry_run))
        except KnowledgeStoreError as e:
            log.error("Legacy data claim failed", user_id=self.user_id, error=str(e))
            return ToolResult.fail(f"Migration failed: {e}")

        if dry_run:
            message = (
                f"Dry run: found {count} guest/legacy memories that would be migrated "
                f"to user {self.user_id}"
            )
        else:
            message = f"Successfully migrated {count} memories to user {self.user_id}"
        return ToolResult(data={"dry_run": bool(dry_run), "count": count, "message": message})


class CascadeBrainstormTool(Tool):
    """Expand a trigger thought through the recursive cascade."""

    name = "cascade_brainstorm"
    description = (
        "Run a recursive cascade brainstorm on a trigger idea. Expands the idea depth "
        "by depth, prunes weak branches and returns every thought plus a synthesis."
    )
    parameters = {
        "type": "object",
        "properties": {
            "trigger": {
                "type": "string",
                "description": "The idea or problem to start the cascade from",
            },
            "max_depth": {
                "type": "integer",
                "description": "Maximum cascade depth (default: 5)",
            },
            "satisfaction_threshold": {
                "type": "number",
                "description": "Stop once a thought reaches this confidence (default: 0.9)",
            },
            "beam_width": {
                "type": "integer",
                "description": "Thoughts kept per depth (default: 3)",
            },
        },
        "required": ["trigger"],
    }

    def __init__(self, config: CascadeConfig | None = None):
        self.config = config or CascadeConfig()

    async def execute(
        self,
        trigger: str,
        max_depth: int | None = None,
        satisfaction_threshold: float | None = None,
        beam_width: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        overrides: dict[str, Any] = {}
        if max_depth is not None:
            overrides["max_depth"] = int(max_depth)
        if satisfaction_threshold is not None:
            overrides["satisfaction_threshold"] = float(satisfaction_threshold)
        if beam_width is not None:
            overrides["beam_width"] = int(beam_width)
        config = self.config.model_copy(update=overrides)

        result = cascade_brainstorm(trigger, config)
        data = result.to_dict()
        data["message"] = (
            f"RCA cascade completed! Explored {result.depths_explored} depths, "
            f"processed {result.thoughts_processed} thoughts"
        )
        return ToolResult(data=data)
