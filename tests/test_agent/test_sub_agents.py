import pytest

from knowledge_companion.agent import make_agent_factory
from knowledge_companion.config import Config
from knowledge_companion.events import RESEARCH_PROGRESS, EventRecorder
from knowledge_companion.exceptions import LLMAPIError
from knowledge_companion.instructions import (
    DEBATE_ARCHITECT,
    DEBATE_CRITIC,
    RESEARCH_AGENT,
    RESEARCH_SPECIALIST,
    RESEARCH_SYNTHESIZER,
    get_instruction_loader,
)
from knowledge_companion.llm import LLMProvider, LLMResponse
from knowledge_companion.tools.calculate import CalculateTool
from knowledge_companion.tools.debate import StartDebateTool
from knowledge_companion.tools.executor import ExecutionPolicy
from knowledge_companion.tools.registry import ToolRegistry
from knowledge_companion.tools.research import DeepResearchTool


class FakeAgent:
    def __init__(self, system_prompt: str, tool_names: list[str], fail_on: set[str]):
        self.system_prompt = system_prompt
        self.tool_names = tool_names
        self.fail_on = fail_on
        self.tasks: list[str] = []

    async def run_autonomous_task(self, task: str) -> str:
        self.tasks.append(task)
        if task in self.fail_on:
            raise LLMAPIError("API error: boom", status_code=500)
        if self.tool_names:
            return f"notes on {task}"
        return f"REPORT:{task}"


class FakeFactory:
    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = fail_on or set()
        self.agents: list[FakeAgent] = []

    def __call__(self, system_prompt: str, tool_names: list[str]) -> FakeAgent:
        agent = FakeAgent(system_prompt, tool_names, self.fail_on)
        self.agents.append(agent)
        return agent


class DebateProvider(LLMProvider):
    """Answers as whichever persona the system prompt names."""

    def __init__(self):
        self.turns = {"architect": 0, "critic": 0}
        self.calls: list[dict] = []

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None) -> LLMResponse:
        self.calls.append({"messages": list(messages), "tools": tools})
        role = "architect" if messages[0].content.startswith("You are The Architect") else "critic"
        self.turns[role] += 1
        if role == "architect":
            return LLMResponse(content=f"<think>drafting</think>Design v{self.turns[role]}")
        return LLMResponse(content=f"Critique {self.turns[role]}")

    async def complete_streaming(self, messages, tools=None, temperature=None, max_tokens=None):
        if False:
            yield None

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


class BrokenProvider(DebateProvider):
    async def complete(self, messages, tools=None, temperature=None, max_tokens=None) -> LLMResponse:
        raise LLMAPIError("API error: overloaded", status_code=529)


def _load(name: str) -> str:
    return get_instruction_loader().load(name)


@pytest.mark.asyncio
async def test_parallel_research_reports_failed_branches_and_synthesizes():
    factory = FakeFactory(fail_on={"borrow checker"})
    events = EventRecorder()
    tool = DeepResearchTool(factory, events)

    result = await tool.execute(topic="Rust", sub_topics=["async", "borrow checker"])

    assert result.success is True
    assert result.data["mode"] == "parallel"
    assert result.data["agents_count"] == 2
    assert result.data["report"] == (
        "REPORT:Here is the raw research data for the topic 'Rust':\n\n"
        "# Research Data on async\n\nnotes on async"
        "\n\n---\n\n"
        "# Research Data on borrow checker\n\nFAILED: API error: boom"
    )

    researchers = [agent for agent in factory.agents if agent.tool_names]
    synthesizers = [agent for agent in factory.agents if not agent.tool_names]
    assert len(researchers) == 2
    assert all(agent.tool_names == ["web_search"] for agent in researchers)
    assert all(agent.system_prompt == _load(RESEARCH_AGENT) for agent in researchers)
    assert [agent.system_prompt for agent in synthesizers] == [_load(RESEARCH_SYNTHESIZER)]

    steps = [payload["step_type"] for payload in events.named(RESEARCH_PROGRESS)]
    assert steps.count("planning") == 2
    assert steps.count("searching") == 2
    assert steps[-1] == "synthesizing"


@pytest.mark.asyncio
async def test_single_research_uses_specialist_synthesis():
    factory = FakeFactory()
    events = EventRecorder()
    tool = DeepResearchTool(factory, events)

    result = await tool.execute(topic="Rust")

    assert result.to_envelope() == {
        "success": True,
        "report": "REPORT:Here is the research data for 'Rust':\n\nnotes on Rust",
    }
    assert factory.agents[-1].system_prompt == _load(RESEARCH_SPECIALIST)
    assert events.named(RESEARCH_PROGRESS) == [
        {"step_type": "planning", "description": "Planning research for: Rust", "details": None},
        {"step_type": "searching", "description": "Searching web for: Rust", "details": None},
        {"step_type": "synthesizing", "description": "Synthesizing research for: Rust", "details": None},
    ]


@pytest.mark.asyncio
async def test_blank_sub_topics_fall_back_to_single_mode():
    factory = FakeFactory()

    result = await DeepResearchTool(factory).execute(topic="Rust", sub_topics=["", "   "])

    assert "mode" not in result.data
    assert len(factory.agents) == 2


@pytest.mark.asyncio
async def test_single_research_failure_is_reported():
    result = await DeepResearchTool(FakeFactory(fail_on={"Rust"})).execute(topic="Rust")

    assert result.to_envelope() == {"success": False, "error": "Research failed: API error: boom"}


@pytest.mark.asyncio
async def test_synthesis_failure_is_reported():
    combined = "Here is the raw research data for the topic 'Rust':\n\n# Research Data on async\n\nnotes on async"
    factory = FakeFactory(fail_on={combined})

    result = await DeepResearchTool(factory).execute(topic="Rust", sub_topics=["async"])

    assert result.error == "Synthesis failed: API error: boom"


@pytest.mark.asyncio
async def test_research_requires_topic():
    result = await DeepResearchTool(FakeFactory()).execute()

    assert result.error == "Missing 'topic' argument"


@pytest.mark.asyncio
async def test_debate_alternates_and_strips_thinking():
    provider = DebateProvider()
    registry = ToolRegistry()
    registry.register(CalculateTool())
    factory = make_agent_factory(provider, registry, Config())
    tool = StartDebateTool(factory)

    result = await tool.execute(topic="A caching layer", turns=2)

    assert result.success is True
    transcript = result.data["transcript"]
    assert [entry["speaker"] for entry in transcript] == [
        "Architect",
        "Critic",
        "Architect",
        "Critic",
        "Architect (Final)",
    ]
    assert [entry["content"] for entry in transcript] == [
        "Design v1",
        "Critique 1",
        "Design v2",
        "Critique 2",
        "Design v3",
    ]
    assert all(isinstance(entry["timestamp"], int) for entry in transcript)
    assert result.data["final_consensus"] == "Design v3"
    assert result.data["topic"] == "A caching layer"

    # Debaters never see tools.
    assert all(call["tools"] == [] for call in provider.calls)

    first_prompt = provider.calls[0]["messages"][-1].content
    assert "Please propose a solution for: A caching layer" in first_prompt
    critic_prompt = provider.calls[1]["messages"][-1].content
    assert "The Architect proposed:\nDesign v1\n\nCritique this design." in critic_prompt
    refine_prompt = provider.calls[2]["messages"][-1].content
    assert "The Critic raised these points:\nCritique 1\n\nRefine your design." in refine_prompt
    final_prompt = provider.calls[-1]["messages"][-1].content
    assert "Provide the FINAL, polished solution." in final_prompt
    assert provider.calls[0]["messages"][0].content == _load(DEBATE_ARCHITECT)
    assert provider.calls[1]["messages"][0].content == _load(DEBATE_CRITIC)


@pytest.mark.asyncio
async def test_debate_with_zero_turns_still_asks_for_final_answer():
    provider = DebateProvider()
    tool = StartDebateTool(make_agent_factory(provider, ToolRegistry(), Config()))

    result = await tool.execute(topic="Queues", turns=0)

    assert [entry["speaker"] for entry in result.data["transcript"]] == ["Architect (Final)"]


@pytest.mark.asyncio
async def test_debate_failure_is_reported():
    tool = StartDebateTool(make_agent_factory(BrokenProvider(), ToolRegistry(), Config()))

    result = await tool.execute(topic="Queues")

    assert result.to_envelope() == {"success": False, "error": "Debate failed: API error: overloaded"}


def test_agent_factory_builds_subset_registry_with_shared_policy():
    registry = ToolRegistry()
    calculate = CalculateTool()
    registry.register(calculate)
    policy = ExecutionPolicy(safe_mode=True)
    factory = make_agent_factory(DebateProvider(), registry, Config(), policy=policy)

    agent = factory("You are a sub-agent.", ["calculate", "web_search"])

    assert agent.system_prompt == "You are a sub-agent."
    assert agent.registry.list_tools() == ["calculate"]
    assert agent.registry.get("calculate") is calculate
    assert agent.policy is policy
    assert agent.history == []
