import json
from pathlib import Path

import pytest

from knowledge_companion.agent import create_agent
from knowledge_companion.config import Config
from knowledge_companion.llm import LLMProvider, LLMResponse, ToolCall
from knowledge_companion.tools import build_default_registry

BASE_TOOLS = {
    "calculate",
    "canvas_update",
    "display_media",
    "scan_codebase",
    "read_file",
    "search_knowledge",
    "list_markdown_files",
    "write_file",
    "write_file_batch",
    "run_terminal_command",
    "web_search",
    "brainstorm_with_grok",
    "create_study_guide",
    "list_registered_agents",
    "invoke_agent",
    "cascade_brainstorm",
}


class ScriptedProvider(LLMProvider):
    def __init__(self, responses: list[LLMResponse]):
        self.responses = list(responses)

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None) -> LLMResponse:
        return self.responses.pop(0)

    async def complete_streaming(self, messages, tools=None, temperature=None, max_tokens=None):
        if False:
            yield None

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


def _config(root: Path) -> Config:
    cfg = Config()
    cfg.knowledge_base.path = str(root)
    return cfg


def test_minimal_registry_has_base_tools(tmp_path: Path):
    registry = build_default_registry(_config(tmp_path))

    assert set(registry.list_tools()) == BASE_TOOLS


def test_provider_and_factory_enable_agent_tools(tmp_path: Path):
    provider = ScriptedProvider([])

    registry = build_default_registry(
        _config(tmp_path),
        provider=provider,
        agent_factory=lambda prompt, names: None,
    )

    assert set(registry.list_tools()) == BASE_TOOLS | {"consult_agent", "deep_research", "start_debate"}


def test_agents_registry_path_is_relative_to_knowledge_base(tmp_path: Path):
    registry = build_default_registry(_config(tmp_path))

    assert registry.get("list_registered_agents").registry_path == tmp_path.resolve() / "agents.json"


def test_create_agent_wires_sub_agent_tools(tmp_path: Path):
    agent = create_agent(_config(tmp_path), provider=ScriptedProvider([]))

    names = agent.registry.list_tools()
    assert "deep_research" in names
    assert "start_debate" in names
    assert "tkg_store" not in names


@pytest.mark.asyncio
async def test_create_agent_reads_knowledge_base_files(tmp_path: Path):
    (tmp_path / "research").mkdir()
    (tmp_path / "research" / "topic.md").write_text("Spaced repetition works.", encoding="utf-8")
    provider = ScriptedProvider(
        [
            LLMResponse(
                content="",
                tool_calls=[ToolCall(id="r1", name="read_file", arguments='{"path": "research/topic.md"}')],
            ),
            LLMResponse(content="Use spaced repetition."),
        ]
    )
    agent = create_agent(_config(tmp_path), provider=provider)
    agent.add_user_message("What does my research say?")

    response = await agent.chat()

    assert response.content == "Use spaced repetition."
    envelope = json.loads(agent.history[2].content)
    assert envelope["content"] == "Spaced repetition works."
