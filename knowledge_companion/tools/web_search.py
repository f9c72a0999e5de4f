"""Web search tool powered by the Tavily Search API."""

import os
import re
from typing import Any

import httpx

from knowledge_companion.config import WebSearchToolConfig
from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class WebSearchTool(Tool):
    """Search the web using Tavily."""

    name = "web_search"
    description = (
        "Search the web for current information using Tavily search API. "
        "Returns top search results with title, snippet, and URL."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query (e.g., 'latest AI news 2025', 'Tauri desktop app tutorial')",
            },
            "max_results": {
                "type": "integer",
                "description": "Maximum number of results to return (1-10, default: 5)",
            },
        },
        "required": ["query"],
    }
    requires_network = True

    def __init__(self, config: WebSearchToolConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or WebSearchToolConfig()
        self.timeout_seconds = float(self.config.timeout) + 5.0
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "Knowledge Companion/0.1.0 (Web Search Tool)"},
        )

    @staticmethod
    def _clean_text(value: str, max_chars: int = 500) -> str:
        """Normalize whitespace and bound output size."""
        cleaned = re.sub(r"\s+", " ", (value or "")).strip()
        if len(cleaned) <= max_chars:
            return cleaned
        return cleaned[:max_chars].rstrip() + "... [truncated]"

    def _api_key(self) -> str:
        return self.config.api_key.strip() or str(os.environ.get("TAVILY_API_KEY", "")).strip()

    async def execute(self, query: str, max_results: int | None = None, **kwargs: Any) -> ToolResult:
        """Execute Tavily web search."""
        q = (query or "").strip()
        if not q:
            return ToolResult.fail("Missing 'query' argument")

        api_key = self._api_key()
        if not api_key:
            return ToolResult.fail(
                "Tavily API key not configured. Please set your Tavily API key in settings."
            )

        requested = self.config.max_results if max_results is None else int(max_results)
        effective = min(max(requested, 1), self.config.max_results_ceiling)

        payload = {
            "api_key": api_key,
            "query": q,
            "max_results": effective,
            "include_answer": True,
            "include_images": False,
            "include_raw_content": False,
        }

        try:
            log.info("Searching web", query=q, max_results=effective)
            response = await self.client.post(
                self.config.base_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as e:
            log.error("Tavily request failed", query=q, error=str(e))
            return ToolResult.fail(f"Failed to connect to Tavily API: {e}")

        if response.status_code >= 400:
            detail = self._clean_text(response.text or "Unknown API error", max_chars=300)
            log.error("Tavily search failed", query=q, status=response.status_code, error=detail)
            return ToolResult.fail(f"Tavily API error: {detail}")

        try:
            body = response.json()
        except ValueError as e:
            return ToolResult.fail(f"Failed to parse search results: {e}")

        raw_results = body.get("results") if isinstance(body, dict) else None
        results: list[dict[str, Any]] = []
        for item in raw_results if isinstance(raw_results, list) else []:
            if not isinstance(item, dict):
                continue
            title, url, content = item.get("title"), item.get("url"), item.get("content")
            # Entries missing any of the core fields are dropped.
            if not all(isinstance(value, str) for value in (title, url, content)):
                continue
            results.append(
                {
                    "title": self._clean_text(title, max_chars=180),
                    "url": url.strip(),
                    "snippet": self._clean_text(content),
                    "published_date": item.get("published_date"),
                }
            )

        answer = body.get("answer") if isinstance(body, dict) else ""
        return ToolResult(
            data={
                "query": q,
                "answer": answer if isinstance(answer, str) else "",
                "results": results,
                "count": len(results),
            }
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()
