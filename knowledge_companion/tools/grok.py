"""Grok-backed tools: second-opinion brainstorming and study guides."""

import os
from typing import Any

from knowledge_companion.config import GrokToolConfig
from knowledge_companion.events import BRAINSTORM_GENERATED, STUDY_GUIDE_GENERATED, EventSink, emit
from knowledge_companion.exceptions import LLMError
from knowledge_companion.instructions import BRAINSTORM_SYSTEM, InstructionLoader, get_instruction_loader
from knowledge_companion.llm import LLMProvider, Message, create_provider
from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MISSING_KEY_ERROR = "Grok API key not configured. Please set your Grok API key in settings."
GROK_NOTE = "This perspective is from Grok-4, providing a second viewpoint to enhance your thinking."


class _GrokTool(Tool):
    requires_network = True
    model_field = "brainstorm_model"

    def __init__(
        self,
        config: GrokToolConfig | None = None,
        provider: LLMProvider | None = None,
        events: EventSink | None = None,
    ):
        self.config = config or GrokToolConfig()
        self.timeout_seconds = float(self.config.timeout) + 5.0
        self.events = events
        self._provider = provider

    def _get_provider(self) -> LLMProvider | None:
        """Return the injected provider or build one from the configured key."""
        if self._provider is not None:
            return self._provider
        api_key = self.config.api_key.strip() or str(os.environ.get("XAI_API_KEY", "")).strip()
        if not api_key:
            return None
        self._provider = create_provider(
            provider="grok",
            model=getattr(self.config, self.model_field),
            api_key=api_key,
            base_url=self.config.base_url,
            timeout=self.config.timeout,
        )
        return self._provider


class BrainstormWithGrokTool(_GrokTool):
    """Ask Grok for an alternative perspective."""

    name = "brainstorm_with_grok"
    description = (
        "Get a second perspective from Grok-4 for brainstorming, creative ideas, or "
        "alternative viewpoints. Returns Grok's response to enhance your thinking."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Question or topic to get a second perspective on from Grok",
            },
            "context": {
                "type": "string",
                "description": "Additional context or background information",
            },
        },
        "required": ["query"],
    }

    def __init__(
        self,
        config: GrokToolConfig | None = None,
        provider: LLMProvider | None = None,
        events: EventSink | None = None,
        instructions: InstructionLoader | None = None,
    ):
        super().__init__(config, provider, events)
        self.instructions = instructions or get_instruction_loader()

    @staticmethod
    def build_prompt(query: str, context: str = "") -> str:
        if context:
            return (
                f"Context: {context}\n\nQuestion: {query}\n\n"
                "Please provide a creative, insightful response or alternative perspective."
            )
        return f"{query}\n\nPlease provide a creative, insightful response or alternative perspective."

    async def execute(self, query: str, context: str = "", **kwargs: Any) -> ToolResult:
        provider = self._get_provider()
        if provider is None:
            return ToolResult.fail(MISSING_KEY_ERROR)

        messages = [
            Message(role="system", content=self.instructions.load(BRAINSTORM_SYSTEM)),
            Message(role="user", content=self.build_prompt(query, context or "")),
        ]
        try:
            log.info("Brainstorming with Grok", query=query)
            response = await provider.complete(messages, temperature=0.8, max_tokens=1000)
        except LLMError as e:
            log.error("Grok brainstorm failed", error=str(e))
            return ToolResult.fail(f"Grok {e}")

        data = {
            "query": query,
            "context": context or "",
            "grok_perspective": response.content or "No response from Grok",
            "note": GROK_NOTE,
        }
        emit(self.events, BRAINSTORM_GENERATED, data)
        return ToolResult(data=data)


class CreateStudyGuideTool(_GrokTool):
    """Generate a markdown study guide with Grok."""

    name = "create_study_guide"
    description = (
        "Create a structured study guide from a topic using Grok. Returns a markdown "
        "formatted study guide."
    )
    parameters = {
        "type": "object",
        "properties": {
            "topic": {
                "type": "string",
                "description": "The topic to create a study guide for",
            },
            "difficulty": {
                "type": "string",
                "enum": ["beginner", "intermediate", "advanced"],
                "description": "Difficulty level",
            },
            "include_resources": {
                "type": "boolean",
                "description": "Include specific resources and practice exercises (default: true)",
            },
        },
        "required": ["topic", "difficulty"],
    }
    model_field = "study_guide_model"

    @staticmethod
    def build_prompt(topic: str, difficulty: str, include_resources: bool = True) -> str:
        resources = "Include specific resources and practice exercises. " if include_resources else ""
        return (
            f"Create a comprehensive study guide for '{topic}' at {difficulty} level. "
            f"{resources}Provide structured markdown with sections, resources, and practice exercises."
        )

    async def execute(
        self,
        topic: str,
        difficulty: str,
        include_resources: bool = True,
        **kwargs: Any,
    ) -> ToolResult:
        provider = self._get_provider()
        if provider is None:
            return ToolResult.fail(MISSING_KEY_ERROR)

        prompt = self.build_prompt(topic, difficulty, bool(include_resources))
        try:
            log.info("Generating study guide", topic=topic, difficulty=difficulty)
            response = await provider.complete(
                [Message(role="user", content=prompt)],
                temperature=0.6,
                max_tokens=8000,
            )
        except LLMError as e:
            log.error("Study guide generation failed", topic=topic, error=str(e))
            return ToolResult.fail(f"Grok {e}")

        data = {
            "topic": topic,
            "difficulty": difficulty,
            "include_resources": bool(include_resources),
            "guide": response.content or "No response from Grok",
        }
        emit(self.events, STUDY_GUIDE_GENERATED, data)
        return ToolResult(data=data)
