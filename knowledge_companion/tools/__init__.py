"""Tools package for Knowledge Companion."""

from pathlib import Path

from knowledge_companion.config import Config
from knowledge_companion.events import EventSink
from knowledge_companion.knowledge_store import KnowledgeStore
from knowledge_companion.llm import LLMProvider
from knowledge_companion.tools.registry import (
    Tool,
    ToolPolicy,
    ToolPolicyChain,
    ToolRegistry,
    ToolResult,
)
from knowledge_companion.tools.executor import ExecutionPolicy, ToolExecutor
from knowledge_companion.tools.calculate import CalculateTool
from knowledge_companion.tools.canvas import CanvasUpdateTool, DisplayMediaTool
from knowledge_companion.tools.files import (
    ListMarkdownFilesTool,
    ReadFileTool,
    ScanCodebaseTool,
    SearchKnowledgeTool,
    WriteFileBatchTool,
    WriteFileTool,
)
from knowledge_companion.tools.terminal import RunTerminalCommandTool
from knowledge_companion.tools.web_search import WebSearchTool
from knowledge_companion.tools.research import AgentFactory, DeepResearchTool
from knowledge_companion.tools.debate import StartDebateTool
from knowledge_companion.tools.grok import BrainstormWithGrokTool, CreateStudyGuideTool
from knowledge_companion.tools.agents import (
    ConsultAgentTool,
    InvokeAgentTool,
    ListRegisteredAgentsTool,
)
from knowledge_companion.tools.knowledge import (
    CascadeBrainstormTool,
    ClaimLegacyDataTool,
    TkgSearchTool,
    TkgStoreTool,
)


def build_default_registry(
    config: Config,
    registry: ToolRegistry | None = None,
    provider: LLMProvider | None = None,
    agent_factory: AgentFactory | None = None,
    knowledge_store: KnowledgeStore | None = None,
    events: EventSink | None = None,
    grok_provider: LLMProvider | None = None,
    user_id: str | None = None,
    runtime_base: Path | str | None = None,
) -> ToolRegistry:
    """Register the full tool catalogue.

    Args:
        config: Application configuration
        registry: Registry to fill; a new one is created when omitted
        provider: Main completion provider, used by ``consult_agent``
        agent_factory: Builds sub-agents for ``deep_research`` and ``start_debate``
        knowledge_store: Enables the ``tkg_*`` tools when given
        events: Sink for presentation-layer notifications
        grok_provider: Overrides the provider built from ``tools.grok``
        user_id: Owner used for knowledge store scoping
        runtime_base: Anchor for a relative knowledge base path

    Returns:
        The filled registry
    """
    registry = registry if registry is not None else ToolRegistry()
    root = config.resolved_knowledge_base_path(runtime_base)
    kb = config.knowledge_base

    registry.register(CalculateTool())
    registry.register(CanvasUpdateTool(events))
    registry.register(DisplayMediaTool(events))
    registry.register(ScanCodebaseTool(root))
    registry.register(ReadFileTool(root))
    registry.register(SearchKnowledgeTool(root, kb.search_folders))
    registry.register(ListMarkdownFilesTool(root))
    registry.register(WriteFileTool(root, events))
    registry.register(WriteFileBatchTool(root, events))
    registry.register(RunTerminalCommandTool(root, timeout=config.tools.terminal_timeout))
    registry.register(WebSearchTool(config.tools.web_search))
    registry.register(BrainstormWithGrokTool(config.tools.grok, grok_provider, events))
    registry.register(CreateStudyGuideTool(config.tools.grok, grok_provider, events))

    agents_path = Path(kb.agents_registry).expanduser()
    if not agents_path.is_absolute():
        agents_path = root / agents_path
    registry.register(ListRegisteredAgentsTool(agents_path))
    registry.register(InvokeAgentTool(agents_path))
    if provider is not None:
        providers = {config.model.provider: provider}
        if grok_provider is not None:
            providers.setdefault("grok", grok_provider)
        registry.register(ConsultAgentTool(agents_path, providers, config.model.provider, events))

    if agent_factory is not None:
        registry.register(DeepResearchTool(agent_factory, events))
        registry.register(StartDebateTool(agent_factory))

    registry.register(CascadeBrainstormTool(config.knowledge_store.cascade))
    if knowledge_store is not None:
        owner = user_id or config.agent.user_id
        registry.register(TkgSearchTool(knowledge_store, owner))
        registry.register(TkgStoreTool(knowledge_store, owner))
        registry.register(ClaimLegacyDataTool(knowledge_store, owner))

    return registry


__all__ = [
    "AgentFactory",
    "ExecutionPolicy",
    "Tool",
    "ToolExecutor",
    "ToolPolicy",
    "ToolPolicyChain",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
    "CalculateTool",
    "CanvasUpdateTool",
    "DisplayMediaTool",
    "ScanCodebaseTool",
    "ReadFileTool",
    "SearchKnowledgeTool",
    "ListMarkdownFilesTool",
    "WriteFileTool",
    "WriteFileBatchTool",
    "RunTerminalCommandTool",
    "WebSearchTool",
    "DeepResearchTool",
    "StartDebateTool",
    "BrainstormWithGrokTool",
    "CreateStudyGuideTool",
    "ListRegisteredAgentsTool",
    "InvokeAgentTool",
    "ConsultAgentTool",
    "CascadeBrainstormTool",
    "TkgSearchTool",
    "TkgStoreTool",
    "ClaimLegacyDataTool",
]
