"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field, model_validator

from knowledge_companion.exceptions import ToolExecutionError, ToolNotFoundError
from knowledge_companion.logging import get_logger

log = get_logger(__name__)


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for policy comparisons."""
    return str(value or "").strip().lower()


class ToolResult(BaseModel):
    """Result from tool execution.

    ``data`` holds the tool-specific fields of the JSON envelope; ``error``
    is set whenever ``success`` is false.
    """

    success: bool = True
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = str(self.data.get("message") or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @classmethod
    def fail(cls, error: str, **data: Any) -> "ToolResult":
        return cls(success=False, error=error, data=data)

    def to_envelope(self) -> dict[str, Any]:
        """JSON object the model sees as the tool-role message."""
        envelope: dict[str, Any] = {"success": self.success}
        envelope.update(self.data)
        if not self.success:
            envelope["error"] = self.error
        return envelope


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    timeout_seconds: float = 30.0
    requires_network: bool = False
    requires_filesystem: bool = False
    # Mutating tools are refused while safe mode is on.
    mutates: bool = False
    safe_mode_message: str = "Safe Mode is enabled. File writing is disabled."
    # Tools that report their own "Missing ..." errors turn this off.
    enforce_required: bool = True

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and envelope data
        """
        pass

    def write_paths(self, arguments: dict[str, Any]) -> list[str]:
        """Paths this call would write; checked against the write scope before dispatch."""
        return []

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            OpenAI function-style definition
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        if not self.enforce_required:
            return
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolPolicy(BaseModel):
    """Tools removed from the available set."""

    deny: list[str] = Field(default_factory=list)


class ToolPolicyChain:
    """Apply policies in cascade: mode -> session."""

    def __init__(self, steps: list[tuple[str, ToolPolicy]] | None = None):
        self.steps: list[tuple[str, ToolPolicy]] = list(steps or [])

    @staticmethod
    def _apply(current_names: set[str], policy: ToolPolicy) -> set[str]:
        return current_names - {_normalize_tool_name(item) for item in policy.deny}

    def resolve(self, available_tools: list[Tool]) -> list[Tool]:
        """Resolve final tool list after applying policy chain."""
        if not self.steps:
            return list(available_tools)
        current_names = {_normalize_tool_name(tool.name) for tool in available_tools}
        for _, policy in self.steps:
            current_names = self._apply(current_names, policy)
        return [tool for tool in available_tools if _normalize_tool_name(tool.name) in current_names]

    def denied_by(self, name: str) -> str | None:
        """Label of the first step that removes ``name``, if any."""
        current = {_normalize_tool_name(name)}
        for label, policy in self.steps:
            current = self._apply(current, policy)
            if not current:
                return label
        return None


class ToolRegistry:
    """Registry mapping tool names to handlers."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")
        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def subset(self, names: list[str]) -> "ToolRegistry":
        """New registry sharing the named tool instances (unknown names are ignored)."""
        child = ToolRegistry()
        for name in names:
            if name in self._tools:
                child.register(self._tools[name])
        return child

    def list_tools(self, chain: ToolPolicyChain | None = None) -> list[str]:
        """List registered tool names, optionally filtered by a policy chain."""
        tools = list(self._tools.values())
        if chain is not None:
            tools = chain.resolve(tools)
        return [tool.name for tool in tools]

    def get_definitions(self, chain: ToolPolicyChain | None = None) -> list[dict[str, Any]]:
        """Get tool definitions for the LLM.

        Returns:
            List of OpenAI function-style definitions
        """
        tools = list(self._tools.values())
        if chain is not None:
            tools = chain.resolve(tools)
        return [tool.get_definition() for tool in tools]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        session_id: str | None = None,
    ) -> ToolResult:
        """Execute a tool by name under its own timeout.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails or times out
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))
        log.info("Executing tool", tool=name, args=arguments)
        try:
            result = await asyncio.wait_for(
                tool.execute(**arguments, _session_id=(session_id or "").strip()),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, success=result.success)
        return result
