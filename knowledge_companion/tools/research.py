"""Deep research delegated to sub-agents."""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Callable

from knowledge_companion.events import RESEARCH_PROGRESS, EventSink, emit
from knowledge_companion.exceptions import KnowledgeCompanionError
from knowledge_companion.instructions import (
    RESEARCH_AGENT,
    RESEARCH_SPECIALIST,
    RESEARCH_SYNTHESIZER,
    InstructionLoader,
    get_instruction_loader,
)
from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import Tool, ToolResult

log = get_logger(__name__)

# (system_prompt, tool_names) -> fresh ConversationAgent
AgentFactory = Callable[[str, list[str]], Any]

RESEARCH_TOOLS = ["web_search"]


@dataclass
class ResearchStep:
    """Progress notification payload."""

    step_type: str  # "planning", "searching", "synthesizing"
    description: str
    details: str | None = None


class DeepResearchTool(Tool):
    """Research a topic with one agent, or fan out one agent per sub-topic."""

    name = "deep_research"
    description = (
        "Delegates a complex research task to a specialized Deep Research Agent. "
        "Use this for broad topics requiring synthesis of multiple sources."
    )
    parameters = {
        "type": "object",
        "properties": {
            "topic": {
                "type": "string",
                "description": "The main research topic",
            },
            "sub_topics": {
                "type": "array",
                "items": {"type": "string"},
                "description": (
                    "Optional list of sub-topics. Each one is researched by its own agent "
                    "in parallel before the findings are synthesized."
                ),
            },
        },
        "required": ["topic"],
    }
    requires_network = True
    enforce_required = False
    timeout_seconds = 900.0

    def __init__(
        self,
        agent_factory: AgentFactory,
        events: EventSink | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.agent_factory = agent_factory
        self.events = events
        self.instructions = instructions or get_instruction_loader()

    def _progress(self, step_type: str, description: str, details: str | None = None) -> None:
        emit(self.events, RESEARCH_PROGRESS, asdict(ResearchStep(step_type, description, details)))

    async def _research(self, topic: str) -> str:
        """Run one research agent with web search to completion."""
        self._progress("planning", f"Planning research for: {topic}")
        agent = self.agent_factory(self.instructions.load(RESEARCH_AGENT), list(RESEARCH_TOOLS))
        self._progress("searching", f"Searching web for: {topic}")
        return await agent.run_autonomous_task(topic)

    async def _synthesize(self, template: str, task: str, topic: str) -> str:
        self._progress("synthesizing", f"Synthesizing research for: {topic}")
        agent = self.agent_factory(self.instructions.load(template), [])
        return await agent.run_autonomous_task(task)

    async def execute(
        self,
        topic: str | None = None,
        sub_topics: list[str] | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if not topic:
            return ToolResult.fail("Missing 'topic' argument")

        branches = [str(sub) for sub in (sub_topics or []) if isinstance(sub, str) and sub.strip()]
        if branches:
            return await self._run_parallel(topic, branches)
        return await self._run_single(topic)

    async def _run_parallel(self, topic: str, sub_topics: list[str]) -> ToolResult:
        log.info("Spawning parallel research agents", topic=topic, count=len(sub_topics))
        outcomes = await asyncio.gather(
            *(self._research(sub) for sub in sub_topics),
            return_exceptions=True,
        )

        reports: list[str] = []
        for sub, outcome in zip(sub_topics, outcomes):
            if isinstance(outcome, BaseException):
                log.warning("Research branch failed", sub_topic=sub, error=str(outcome))
                reports.append(f"# Research Data on {sub}\n\nFAILED: {outcome}")
            else:
                reports.append(f"# Research Data on {sub}\n\n{outcome}")

        combined = (
            f"Here is the raw research data for the topic '{topic}':\n\n"
            + "\n\n---\n\n".join(reports)
        )
        try:
            report = await self._synthesize(RESEARCH_SYNTHESIZER, combined, topic)
        except KnowledgeCompanionError as e:
            log.error("Research synthesis failed", topic=topic, error=str(e))
            return ToolResult.fail(f"Synthesis failed: {e}")
        return ToolResult(data={"report": report, "mode": "parallel", "agents_count": len(reports)})

    async def _run_single(self, topic: str) -> ToolResult:
        log.info("Starting deep research", topic=topic)
        try:
            context = await self._research(topic)
        except KnowledgeCompanionError as e:
            log.error("Research failed", topic=topic, error=str(e))
            return ToolResult.fail(f"Research failed: {e}")

        try:
            report = await self._synthesize(
                RESEARCH_SPECIALIST,
                f"Here is the research data for '{topic}':\n\n{context}",
                topic,
            )
        except KnowledgeCompanionError as e:
            log.error("Research synthesis failed", topic=topic, error=str(e))
            return ToolResult.fail(f"Synthesis failed: {e}")
        return ToolResult(data={"report": report})
