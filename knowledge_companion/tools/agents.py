"""Registered agent ("Construct") tools backed by an ``agents.json`` file."""

import json
from pathlib import Path
from typing import Any

from knowledge_companion.events import AGENT_CONSULTED, EventSink, emit
from knowledge_companion.exceptions import LLMAPIError, LLMError, ToolError
from knowledge_companion.llm import LLMProvider, Message
from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import Tool, ToolResult

log = get_logger(__name__)

DEFAULT_AGENT_PROMPT = "You are a helpful assistant."
INVOKE_INSTRUCTIONS = (
    "You should now adopt the persona and guidelines of this agent for the next part of the conversation."
)


class AgentRegistryError(ToolError):
    """The registry file is missing, unreadable or malformed."""


def load_agents(path: Path) -> list[dict[str, Any]]:
    """Return the ``agents`` array from a registry file.

    Raises:
        AgentRegistryError: when the file cannot be used
    """
    if not path.is_file():
        raise AgentRegistryError(f"agents.json not found at {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise AgentRegistryError(f"Failed to read agents.json: {e}")
    except json.JSONDecodeError as e:
        raise AgentRegistryError(f"Parse error: {e}")
    agents = data.get("agents") if isinstance(data, dict) else None
    if not isinstance(agents, list):
        raise AgentRegistryError("No agents array in registry")
    return [agent for agent in agents if isinstance(agent, dict)]


def find_agent(
    agents: list[dict[str, Any]],
    agent_id: str | None = None,
    agent_name: str | None = None,
) -> dict[str, Any] | None:
    """Look up by exact id first, then by case-insensitive name."""
    if agent_id:
        for agent in agents:
            if agent.get("id") == agent_id:
                return agent
    if agent_name:
        wanted = agent_name.lower()
        for agent in agents:
            name = agent.get("name")
            if isinstance(name, str) and name.lower() == wanted:
                return agent
    return None


class _AgentRegistryTool(Tool):
    requires_filesystem = True

    def __init__(self, registry_path: Path | str):
        self.registry_path = Path(registry_path).expanduser()


class ListRegisteredAgentsTool(_AgentRegistryTool):
    """Summaries of every registered agent."""

    name = "list_registered_agents"
    description = (
        "Lists all AI agents (Constructs) registered in the system. Returns their names, "
        "roles, and descriptions."
    )
    parameters = {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> ToolResult:
        try:
            agents = load_agents(self.registry_path)
        except AgentRegistryError as e:
            return ToolResult.fail(str(e))
        return ToolResult(
            data={
                "agents": [
                    {
                        "id": agent.get("id"),
                        "name": agent.get("name"),
                        "role": agent.get("role"),
                        "description": agent.get("description"),
                    }
                    for agent in agents
                ]
            }
        )


class InvokeAgentTool(_AgentRegistryTool):
    """Hand the model a registered agent's persona."""

    name = "invoke_agent"
    description = (
        "Retrieves the specialized system prompt and instructions for a specific registered "
        "agent. Use this to adopt the persona or expertise of a Construct."
    )
    parameters = {
        "type": "object",
        "properties": {
            "agent_id": {
                "type": "string",
                "description": "The unique ID of the agent to invoke (e.g., 'curriculum-architect-v1')",
            },
        },
        "required": ["agent_id"],
    }
    enforce_required = False

    async def execute(self, agent_id: str | None = None, **kwargs: Any) -> ToolResult:
        if not agent_id:
            return ToolResult.fail("Missing agent_id")
        try:
            agents = load_agents(self.registry_path)
        except AgentRegistryError as e:
            return ToolResult.fail(str(e))

        agent = find_agent(agents, agent_id=agent_id)
        if agent is None:
            return ToolResult.fail(f"Agent with ID '{agent_id}' not found")
        return ToolResult(
            data={
                "agent_id": agent_id,
                "system_prompt": agent.get("systemPrompt"),
                "instructions": INVOKE_INSTRUCTIONS,
            }
        )


class ConsultAgentTool(_AgentRegistryTool):
    """Make a one-shot completion call as a registered agent."""

    name = "consult_agent"
    description = (
        "Consult a specialized AI agent for expert input on a problem. Makes a separate API "
        "call to the agent and returns their analysis. Use this to get expert perspectives "
        "from registered Constructs."
    )
    parameters = {
        "type": "object",
        "properties": {
            "agent_id": {
                "type": "string",
                "description": "The unique ID of the agent to consult (from list_registered_agents)",
            },
            "agent_name": {
                "type": "string",
                "description": "The display name of the agent to consult (from list_registered_agents)",
            },
            "query": {
                "type": "string",
                "description": "The question or problem to consult them about",
            },
        },
        "required": ["query"],
    }
    requires_network = True
    enforce_required = False
    timeout_seconds = 180.0

    def __init__(
        self,
        registry_path: Path | str,
        providers: dict[str, LLMProvider],
        default_provider: str,
        events: EventSink | None = None,
    ):
        """Initialize the tool.

        Args:
            registry_path: Location of ``agents.json``
            providers: Completion providers keyed by provider name
            default_provider: Key used when an agent names no usable provider
            events: Optional event sink
        """
        super().__init__(registry_path)
        self.providers = dict(providers)
        self.default_provider = default_provider
        self.events = events

    def _select_provider(self, agent: dict[str, Any]) -> tuple[str, LLMProvider | None]:
        preferred = str(agent.get("preferredProvider") or "").strip().lower()
        if preferred in self.providers:
            return preferred, self.providers[preferred]
        if preferred:
            log.info("Preferred provider unavailable, using default", preferred=preferred)
        return self.default_provider, self.providers.get(self.default_provider)

    async def execute(
        self,
        agent_id: str | None = None,
        agent_name: str | None = None,
        query: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if not agent_id and not agent_name:
            return ToolResult.fail("Missing 'agent_id' or 'agent_name' argument")
        if not query:
            return ToolResult.fail("Missing 'query' argument")

        label = agent_id or agent_name
        try:
            agents = load_agents(self.registry_path)
        except AgentRegistryError as e:
            return ToolResult.fail(str(e))

        agent = find_agent(agents, agent_id=agent_id, agent_name=agent_name)
        if agent is None:
            return ToolResult.fail(f"Agent '{label}' not found in registry")

        resolved_id = str(agent.get("id") or "unknown")
        resolved_name = str(agent.get("name") or "Unknown")
        provider_name, provider = self._select_provider(agent)
        if provider is None:
            return ToolResult.fail(f"No completion provider configured for '{provider_name}'")

        messages = [
            Message(role="system", content=str(agent.get("systemPrompt") or DEFAULT_AGENT_PROMPT)),
            Message(role="user", content=query),
        ]
        try:
            log.info("Consulting agent", agent=resolved_id, provider=provider_name)
            response = await provider.complete(messages, temperature=0.7, max_tokens=4096)
        except LLMAPIError as e:
            return ToolResult.fail(str(e))
        except LLMError as e:
            return ToolResult.fail(f"Request failed: {e}")

        content = response.content or "No response"
        emit(self.events, AGENT_CONSULTED, f"{resolved_name}:\n\n{content}")
        return ToolResult(
            data={
                "agent_id": resolved_id,
                "agent_name": resolved_name,
                "provider": provider_name,
                "response": content,
            }
        )
