"""Policy-gated tool dispatch.

``ToolExecutor.execute`` always returns a JSON envelope. Policy rejections,
unknown tools, malformed arguments and handler failures are all reported
as ``{"success": false, "error": "..."}`` so the model can react to them.
"""

import json
from dataclasses import dataclass, field
from typing import Any

from knowledge_companion.config import ModeConfig
from knowledge_companion.exceptions import ToolBlockedError, ToolError
from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import ToolPolicy, ToolPolicyChain, ToolRegistry, ToolResult

log = get_logger(__name__)


def normalize_relative_path(path: str) -> str:
    """Forward slashes, no leading ``./``, no surrounding whitespace."""
    normalized = str(path or "").strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _has_traversal(path: str) -> bool:
    return ".." in normalize_relative_path(path).split("/")


@dataclass
class ExecutionPolicy:
    """Per-conversation tool policy."""

    student: bool = False
    safe_mode: bool = False
    enabled_tools: dict[str, bool] = field(default_factory=dict)
    student_disabled_tools: list[str] = field(default_factory=list)
    write_prefixes: list[str] = field(default_factory=list)
    write_files: list[str] = field(default_factory=list)
    student_write_prefixes: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, mode: ModeConfig, enabled_tools: dict[str, bool] | None = None) -> "ExecutionPolicy":
        return cls(
            student=mode.is_student,
            safe_mode=mode.effective_safe_mode,
            enabled_tools=dict(mode.enabled_tools if enabled_tools is None else enabled_tools),
            student_disabled_tools=list(mode.student_disabled_tools),
            write_prefixes=list(mode.write_prefixes),
            write_files=list(mode.write_files),
            student_write_prefixes=list(mode.student_write_prefixes),
        )

    def chain(self) -> ToolPolicyChain:
        """Mode lock then session toggles, as a policy chain."""
        steps: list[tuple[str, ToolPolicy]] = []
        if self.student:
            steps.append(("mode", ToolPolicy(deny=list(self.student_disabled_tools))))
        disabled = [name for name, enabled in self.enabled_tools.items() if enabled is False]
        if disabled:
            steps.append(("session", ToolPolicy(deny=disabled)))
        return ToolPolicyChain(steps)

    def check_write_path(self, path: str) -> str | None:
        """Return a rejection message for ``path``, or None when writable."""
        if _has_traversal(path):
            return "Security Error: Path traversal (../) is forbidden."
        normalized = normalize_relative_path(path)
        allowed = normalized in self.write_files or any(
            normalized.startswith(prefix) for prefix in self.write_prefixes
        )
        if not normalized or normalized.startswith("/") or not allowed:
            return (
                f"Security Error: Writing to '{path}' is not allowed. "
                f"Allowed directories: {self.write_prefixes}"
            )
        if self.student and not any(
            normalized == prefix or normalized.startswith(f"{prefix}/")
            for prefix in self.student_write_prefixes
        ):
            allowed_student = " or ".join(f"'{prefix}/'" for prefix in self.student_write_prefixes)
            return f"Student mode: AI may only write to {allowed_student}"
        return None


class ToolExecutor:
    """Run tool calls through the policy gates and the registry."""

    def __init__(self, registry: ToolRegistry, policy: ExecutionPolicy | None = None, session_id: str = ""):
        self.registry = registry
        self.policy = policy or ExecutionPolicy()
        self.session_id = session_id

    def definitions(self) -> list[dict[str, Any]]:
        """Tool schema for the completion request, filtered by policy."""
        return self.registry.get_definitions(self.policy.chain())

    def _gate(self, name: str, arguments: dict[str, Any]) -> None:
        """Raise ToolBlockedError when policy forbids the call."""
        tool = self.registry.get(name)

        denied = self.policy.chain().denied_by(name)
        if denied == "mode":
            raise ToolBlockedError(name, f"Tool '{name}' is disabled in student mode")
        if denied == "session":
            raise ToolBlockedError(name, f"Tool '{name}' is disabled for this session")

        if self.policy.safe_mode and tool.mutates:
            raise ToolBlockedError(name, tool.safe_mode_message)

        # All paths are validated before dispatch.
        for path in tool.write_paths(arguments):
            rejection = self.policy.check_write_path(path)
            if rejection:
                raise ToolBlockedError(name, rejection)

    async def execute(self, tool_name: str, argument_json: str | dict[str, Any]) -> dict[str, Any]:
        """Dispatch one call and return its result envelope."""
        if isinstance(argument_json, dict):
            arguments = argument_json
        else:
            try:
                arguments = json.loads(argument_json or "{}")
            except json.JSONDecodeError as e:
                return ToolResult.fail(f"Invalid arguments: {e}").to_envelope()
        if not isinstance(arguments, dict):
            return ToolResult.fail("Invalid arguments: expected a JSON object").to_envelope()

        if not self.registry.has_tool(tool_name):
            log.warning("Unknown tool requested", tool=tool_name)
            return ToolResult.fail(f"Unknown tool: {tool_name}").to_envelope()

        try:
            self._gate(tool_name, arguments)
        except ToolBlockedError as e:
            log.info("Tool call rejected", tool=tool_name, reason=e.reason)
            return ToolResult.fail(e.reason).to_envelope()

        try:
            result = await self.registry.execute(tool_name, arguments, session_id=self.session_id)
        except ToolError as e:
            return ToolResult.fail(str(e)).to_envelope()
        except Exception as e:
            log.error("Tool handler crashed", tool=tool_name, error=str(e), exc_info=True)
            return ToolResult.fail(str(e)).to_envelope()
        return result.to_envelope()
