"""Architect versus Critic debate between two tool-less agents."""

from datetime import datetime, timezone
from typing import Any

from knowledge_companion.exceptions import KnowledgeCompanionError
from knowledge_companion.instructions import (
    DEBATE_ARCHITECT,
    DEBATE_CRITIC,
    InstructionLoader,
    get_instruction_loader,
)
from knowledge_companion.logging import get_logger
from knowledge_companion.tool_parsing import strip_thinking
from knowledge_companion.tools.registry import Tool, ToolResult
from knowledge_companion.tools.research import AgentFactory

log = get_logger(__name__)

DEFAULT_TURNS = 3


def _now_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class StartDebateTool(Tool):
    """Alternate Architect proposals and Critic reviews, then ask for a final design."""

    name = "start_debate"
    description = (
        "Starts a multi-agent debate on a topic. Spawns an Architect and a Critic to "
        "discuss and refine a solution. Returns the transcript and final consensus."
    )
    parameters = {
        "type": "object",
        "properties": {
            "topic": {
                "type": "string",
                "description": "The topic or problem to debate",
            },
            "turns": {
                "type": "integer",
                "description": "Number of debate turns (default: 3)",
            },
        },
        "required": ["topic"],
    }
    requires_network = True
    enforce_required = False
    timeout_seconds = 900.0

    def __init__(self, agent_factory: AgentFactory, instructions: InstructionLoader | None = None):
        self.agent_factory = agent_factory
        self.instructions = instructions or get_instruction_loader()

    @staticmethod
    async def _speak(agent: Any, prompt: str) -> str:
        """One single-iteration turn; thinking blocks never reach the transcript."""
        agent.add_user_message(prompt)
        response = await agent.chat(1)
        return strip_thinking(response.content)

    async def debate(self, topic: str, turns: int = DEFAULT_TURNS) -> dict[str, Any]:
        """Run the full debate.

        Raises:
            KnowledgeCompanionError: when either agent's completion fails
        """
        architect = self.agent_factory(self.instructions.load(DEBATE_ARCHITECT), [])
        critic = self.agent_factory(self.instructions.load(DEBATE_CRITIC), [])
        transcript: list[dict[str, Any]] = []
        last_message = ""

        def record(speaker: str, content: str) -> None:
            transcript.append({"speaker": speaker, "content": content, "timestamp": _now_millis()})

        log.info("Starting debate", topic=topic, turns=turns)
        for turn in range(turns):
            log.debug("Debate turn", turn=turn + 1, turns=turns)
            if turn == 0:
                prompt = f"Please propose a solution for: {topic}"
            else:
                prompt = f"The Critic raised these points:\n{last_message}\n\nRefine your design."
            last_message = await self._speak(architect, prompt)
            record("Architect", last_message)

            last_message = await self._speak(
                critic,
                f"The Architect proposed:\n{last_message}\n\nCritique this design.",
            )
            record("Critic", last_message)

        consensus = await self._speak(
            architect,
            f"Considering the Critic's feedback:\n{last_message}\n\nProvide the FINAL, polished solution.",
        )
        record("Architect (Final)", consensus)
        return {"topic": topic, "transcript": transcript, "final_consensus": consensus}

    async def execute(self, topic: str | None = None, turns: int | None = None, **kwargs: Any) -> ToolResult:
        if not topic:
            return ToolResult.fail("Missing 'topic' argument")
        count = DEFAULT_TURNS if turns is None else max(int(turns), 0)
        try:
            result = await self.debate(topic, count)
        except KnowledgeCompanionError as e:
            log.error("Debate failed", topic=topic, error=str(e))
            return ToolResult.fail(f"Debate failed: {e}")
        return ToolResult(data=result)
