"""Custom exceptions for Knowledge Companion."""


class KnowledgeCompanionError(Exception):
    """Base exception for Knowledge Companion."""

    pass


class ConfigurationError(KnowledgeCompanionError):
    """Configuration-related errors."""

    pass


class LLMError(KnowledgeCompanionError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(KnowledgeCompanionError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(reason)
        self.tool_name = tool_name
        self.reason = reason


class AgentError(KnowledgeCompanionError):
    """Conversation loop errors."""

    pass


class MaxIterationsError(AgentError):
    """Iteration budget exhausted before the model produced a final answer."""

    def __init__(self, max_iterations: int):
        super().__init__(
            f"Maximum iterations ({max_iterations}) reached. The task may be too complex."
        )
        self.max_iterations = max_iterations


class KnowledgeStoreError(KnowledgeCompanionError):
    """Vector store errors."""

    pass


class EmbeddingError(KnowledgeStoreError):
    """Embedding provider errors."""

    pass


class MemoryRejectedError(KnowledgeStoreError):
    """Content rejected by memory admission scoring."""

    def __init__(self, decision: str, score: float):
        super().__init__(
            f"WAMA Decision: {decision} (score: {score:.2f}) - Content not worth saving"
        )
        self.decision = decision
        self.score = score
