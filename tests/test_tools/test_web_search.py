import httpx
import pytest

from knowledge_companion.config import WebSearchToolConfig
from knowledge_companion.tools.web_search import WebSearchTool


class _FakeResponse:
    def __init__(self, payload: dict | None = None, status_code: int = 200, text: str | None = None):
        self._payload = payload
        self.status_code = status_code
        self.text = text if text is not None else str(payload)

    def json(self) -> dict:
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


class _FakeClient:
    def __init__(self, response: _FakeResponse | None = None, error: Exception | None = None):
        self._response = response
        self._error = error
        self.calls: list[dict] = []

    async def post(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self._error is not None:
            raise self._error
        return self._response


def _tool(client: _FakeClient, **overrides) -> WebSearchTool:
    config = WebSearchToolConfig(api_key="tvly-test", **overrides)
    return WebSearchTool(config, client=client)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_web_search_formats_tavily_results_and_sends_payload(monkeypatch):
    monkeypatch.delenv("TAVILY_API_KEY", raising=False)
    client = _FakeClient(
        _FakeResponse(
            {
                "answer": "Zagreb is the capital.",
                "results": [
                    {
                        "title": "Zagreb   travel guide",
                        "url": " https://example.com/zagreb ",
                        "content": "Visit Zagreb old town\n and museums.",
                        "published_date": "2025-01-02",
                    },
                    {"title": "No url entry", "content": "dropped"},
                ],
            }
        )
    )
    tool = _tool(client)

    result = await tool.execute(query="  croatia capital ")

    assert result.success is True
    assert result.data["query"] == "croatia capital"
    assert result.data["answer"] == "Zagreb is the capital."
    assert result.data["count"] == 1
    first = result.data["results"][0]
    assert first == {
        "title": "Zagreb travel guide",
        "url": "https://example.com/zagreb",
        "snippet": "Visit Zagreb old town and museums.",
        "published_date": "2025-01-02",
    }

    call = client.calls[0]
    assert call["url"] == "https://api.tavily.com/search"
    assert call["json"]["api_key"] == "tvly-test"
    assert call["json"]["max_results"] == 5
    assert call["json"]["include_answer"] is True


@pytest.mark.asyncio
async def test_web_search_clamps_max_results_to_ceiling():
    client = _FakeClient(_FakeResponse({"results": []}))
    tool = _tool(client)

    await tool.execute(query="q", max_results=50)
    await tool.execute(query="q", max_results=0)

    assert client.calls[0]["json"]["max_results"] == 10
    assert client.calls[1]["json"]["max_results"] == 1


@pytest.mark.asyncio
async def test_web_search_requires_query():
    tool = _tool(_FakeClient(_FakeResponse({})))

    result = await tool.execute(query="   ")

    assert result.success is False
    assert result.error == "Missing 'query' argument"


@pytest.mark.asyncio
async def test_web_search_reports_missing_api_key(monkeypatch):
    monkeypatch.delenv("TAVILY_API_KEY", raising=False)
    client = _FakeClient(_FakeResponse({}))
    tool = WebSearchTool(WebSearchToolConfig(), client=client)  # type: ignore[arg-type]

    result = await tool.execute(query="anything")

    assert result.success is False
    assert "Tavily API key not configured" in result.error
    assert client.calls == []


@pytest.mark.asyncio
async def test_web_search_uses_env_api_key(monkeypatch):
    monkeypatch.setenv("TAVILY_API_KEY", "env-key")
    client = _FakeClient(_FakeResponse({"results": []}))
    tool = WebSearchTool(WebSearchToolConfig(), client=client)  # type: ignore[arg-type]

    result = await tool.execute(query="anything")

    assert result.success is True
    assert client.calls[0]["json"]["api_key"] == "env-key"


@pytest.mark.asyncio
async def test_web_search_surfaces_api_errors():
    client = _FakeClient(_FakeResponse(status_code=401, text="Unauthorized: invalid key"))
    tool = _tool(client)

    result = await tool.execute(query="q")

    assert result.success is False
    assert result.error == "Tavily API error: Unauthorized: invalid key"


@pytest.mark.asyncio
async def test_web_search_surfaces_transport_errors():
    client = _FakeClient(error=httpx.ConnectError("connection refused"))
    tool = _tool(client)

    result = await tool.execute(query="q")

    assert result.success is False
    assert result.error.startswith("Failed to connect to Tavily API:")


def test_clean_text_truncates_long_values():
    cleaned = WebSearchTool._clean_text("word " * 200, max_chars=20)

    assert cleaned.endswith("... [truncated]")
    assert len(cleaned) <= 20 + len("... [truncated]")
