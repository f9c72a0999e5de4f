"""Terminal tool for running commands in the knowledge base root."""

import asyncio
import os
from pathlib import Path
from typing import Any

from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 10000


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(text)} total chars]"


class RunTerminalCommandTool(Tool):
    """Execute shell commands."""

    name = "run_terminal_command"
    description = (
        "Executes a terminal command in the repository root. Use for running "
        "tests, builds, or git commands."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The command to execute (e.g., 'npm test', 'cargo build')",
            },
        },
        "required": ["command"],
    }
    requires_filesystem = True
    mutates = True
    enforce_required = False
    safe_mode_message = "Safe Mode is enabled. Terminal commands are disabled."

    def __init__(self, root: Path | str, timeout: int = 60):
        self.root = Path(root).expanduser().resolve()
        self.command_timeout = max(1, int(timeout))
        # Registry timeout must outlive the subprocess timeout.
        self.timeout_seconds = float(self.command_timeout + 5)

    async def execute(self, command: str = "", **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute

        Returns:
            ToolResult with stdout, stderr and exit_code
        """
        command = str(command or "").strip()
        if not command:
            return ToolResult.fail("Missing 'command' argument")

        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        try:
            log.info("Executing terminal command", command=command, timeout=self.command_timeout)

            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.root),
                env=env,
            )

            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return ToolResult.fail(f"Command timed out after {self.command_timeout}s")
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                raise

            data = {
                "stdout": _truncate(stdout.decode("utf-8", errors="replace")),
                "stderr": _truncate(stderr.decode("utf-8", errors="replace")),
                "exit_code": process.returncode,
            }
            if process.returncode == 0:
                return ToolResult(data=data)
            return ToolResult(success=False, error=f"Command exited with code {process.returncode}", data=data)

        except Exception as e:
            log.error("Terminal command failed", command=command, error=str(e))
            return ToolResult.fail(f"Failed to execute command: {e}")
