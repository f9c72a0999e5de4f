"""Conversation agent: the completion / tool-execution loop."""

import asyncio
import json
from contextlib import aclosing
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from knowledge_companion.config import Config, get_config
from knowledge_companion.events import CHAT_STREAM, EventSink, emit
from knowledge_companion.exceptions import MaxIterationsError
from knowledge_companion.instructions import SYSTEM_PROMPT, InstructionLoader, get_instruction_loader
from knowledge_companion.knowledge_store import KnowledgeStore
from knowledge_companion.llm import LLMProvider, Message, ToolCall, create_provider_from_config
from knowledge_companion.logging import get_logger
from knowledge_companion.tool_parsing import extract_tool_calls, normalize_structured_calls, split_thinking
from knowledge_companion.tools import AgentFactory, ExecutionPolicy, ToolExecutor, ToolRegistry, build_default_registry

log = get_logger(__name__)

CANCELLED_NOTICE = "\n\n*[Generation stopped by user]*"
REPEAT_LIMIT = 2
TIMESTAMP_HINT = "\n(Please consider the timestamp above when responding)"


@dataclass
class ChatResponse:
    """Outcome of one agent turn."""

    content: str
    thinking: list[str] = field(default_factory=list)
    tool_calls_made: int = 0
    iterations: int = 0
    stop_reason: str | None = None  # None, "cancelled" or "repeated_call"


@dataclass
class StreamChunk:
    """Payload of a ``chat-stream`` event."""

    content: str = ""
    done: bool = False
    tool_calls: list[dict[str, Any]] | None = None


def local_now(offset_hours: int) -> datetime:
    return datetime.now(timezone(timedelta(hours=offset_hours)))


def format_timestamp(offset_hours: int) -> str:
    return local_now(offset_hours).strftime("%Y-%m-%d %H:%M:%S")


def default_system_prompt(
    user_name: str | None = None,
    offset_hours: int = -5,
    instructions: InstructionLoader | None = None,
) -> str:
    """Render the study-guide system prompt with greeting and current time."""
    loader = instructions or get_instruction_loader()
    if user_name:
        greeting = f"You are a helpful AI study guide assistant for {user_name}."
    else:
        greeting = "You are a helpful AI study guide assistant with access to tools."
    return loader.render(
        SYSTEM_PROMPT,
        greeting=greeting,
        current_time=local_now(offset_hours).strftime("%Y-%m-%d %H:%M:%S %Z"),
    )


class ConversationAgent:
    """Owns one conversation's history and drives the tool loop.

    An instance serves one logical conversation at a time; concurrency only
    happens across instances (for example research sub-agents).
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry | None = None,
        config: Config | None = None,
        system_prompt: str | None = None,
        user_name: str | None = None,
        user_id: str | None = None,
        enabled_tools: dict[str, bool] | None = None,
        events: EventSink | None = None,
        policy: ExecutionPolicy | None = None,
        session_id: str = "",
    ):
        """Initialize the agent.

        Args:
            provider: Completion provider
            registry: Tools the model may call; empty when omitted
            config: Configuration, the global one when omitted
            system_prompt: Overrides the default study-guide prompt
            user_name: Name used in the default greeting
            user_id: Owner identifier passed to scoped tools
            enabled_tools: Session toggles, ignored when ``policy`` is given
            events: Sink for ``chat-stream`` and tool notifications
            policy: Tool execution policy, built from config when omitted
            session_id: Forwarded to tools as ``_session_id``
        """
        self.provider = provider
        self.config = config or get_config()
        self.registry = registry if registry is not None else ToolRegistry()
        self.user_name = user_name if user_name is not None else self.config.agent.user_name
        self.user_id = user_id or self.config.agent.user_id
        self.events = events
        self.policy = policy or ExecutionPolicy.from_config(self.config.mode, enabled_tools)
        self.executor = ToolExecutor(self.registry, self.policy, session_id=session_id)
        self.system_prompt = system_prompt or default_system_prompt(
            self.user_name, self.config.agent.timezone_offset_hours
        )
        self._history: list[Message] = []
        self._stop_requested = asyncio.Event()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    def _timestamp(self) -> str:
        return format_timestamp(self.config.agent.timezone_offset_hours)

    def _append(self, message: Message) -> None:
        if message.timestamp is None:
            message.timestamp = self._timestamp()
        self._history.append(message)

    def add_user_message(self, content: str) -> None:
        self._append(Message(role="user", content=content))

    def clear_history(self) -> None:
        self._history.clear()

    def estimate_tokens(self) -> int:
        """Rough token count: characters of content and tool arguments over four."""
        chars = 0
        for msg in self._history:
            chars += len(msg.content or "")
            for call in msg.tool_calls:
                chars += len(call.arguments or "")
        return chars // 4

    def prune_history(self) -> int:
        """Drop the oldest messages until the estimate fits the context ceiling.

        Returns:
            Number of messages removed
        """
        limit = self.config.agent.max_context_tokens
        floor = self.config.agent.min_messages
        before = self.estimate_tokens()
        if before <= limit:
            return 0

        removed = 0
        while self.estimate_tokens() > limit and len(self._history) > floor:
            self._history.pop(0)
            removed += 1
        # A tool result must follow the assistant message that requested it.
        while self._history and self._history[0].role == "tool":
            self._history.pop(0)
            removed += 1
        log.info("Pruned history", removed=removed, tokens_before=before, tokens_after=self.estimate_tokens())
        return removed

    def _build_messages(self) -> list[Message]:
        """System prompt plus history, with timestamps folded into the outgoing copies."""
        messages = [Message(role="system", content=self.system_prompt)]
        annotate = self.config.agent.timestamp_annotations
        for msg in self._history:
            if annotate and msg.timestamp:
                hint = TIMESTAMP_HINT if msg.role == "user" else ""
                messages.append(replace(msg, content=f"[{msg.timestamp}] {msg.content}\n\n{hint}"))
            else:
                messages.append(msg)
        return messages

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _run_tool(self, call: ToolCall) -> None:
        envelope = await self.executor.execute(call.name, call.arguments)
        self._append(
            Message(
                role="tool",
                content=json.dumps(envelope, ensure_ascii=False, default=str),
                tool_call_id=call.id,
            )
        )

    def _skip_tool(self, call: ToolCall) -> None:
        envelope = {"success": False, "error": "Skipped: repeated call detected"}
        self._append(Message(role="tool", content=json.dumps(envelope), tool_call_id=call.id))

    # ------------------------------------------------------------------
    # Buffered loop
    # ------------------------------------------------------------------

    async def chat(self, max_iterations: int | None = None) -> ChatResponse:
        """Run the loop until the model answers without tool calls.

        Raises:
            MaxIterationsError: when the budget runs out first
            LLMError: when a completion call fails
        """
        limit = self.config.agent.max_iterations if max_iterations is None else max_iterations
        total_tool_calls = 0

        for iteration in range(limit):
            log.debug("Agent iteration", iteration=iteration + 1, max_iterations=limit)
            self.prune_history()

            response = await self.provider.complete(self._build_messages(), tools=self.executor.definitions())
            content = response.content or ""
            if response.tool_calls:
                calls = normalize_structured_calls(response.tool_calls, base_index=total_tool_calls)
            else:
                calls = extract_tool_calls(content, base_index=total_tool_calls)

            # Appended before any tool runs so the reasoning trace stays intact.
            self._append(Message(role="assistant", content=content, tool_calls=list(calls)))

            if not calls:
                clean, thinking = split_thinking(content)
                log.info("Conversation complete", iterations=iteration + 1, tool_calls=total_tool_calls)
                return ChatResponse(
                    content=clean,
                    thinking=thinking,
                    tool_calls_made=total_tool_calls,
                    iterations=iteration + 1,
                )

            log.info("Tool calls requested", count=len(calls), tools=[call.name for call in calls])
            total_tool_calls += len(calls)
            for call in calls:
                await self._run_tool(call)

        log.warning("Maximum iterations reached", max_iterations=limit)
        raise MaxIterationsError(limit)

    async def run_autonomous_task(self, task: str) -> str:
        """Run a task to completion and return the final answer text."""
        self.add_user_message(task)
        response = await self.chat(self.config.agent.autonomous_max_iterations)
        return response.content

    # ------------------------------------------------------------------
    # Streaming loop
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask a running ``chat_stream`` without an explicit cancel event to stop."""
        self._stop_requested.set()

    def _emit_chunk(self, chunk: StreamChunk) -> None:
        emit(self.events, CHAT_STREAM, asdict(chunk))

    def _cancelled(self, iterations: int, tool_calls_made: int) -> ChatResponse:
        log.info("Generation cancelled", iterations=iterations)
        self._emit_chunk(StreamChunk(content=CANCELLED_NOTICE, done=True))
        return ChatResponse(
            content=CANCELLED_NOTICE.strip(),
            tool_calls_made=tool_calls_made,
            iterations=iterations,
            stop_reason="cancelled",
        )

    @staticmethod
    def _collect_streamed_calls(partial: dict[int, dict[str, str]], base_index: int) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for n, index in enumerate(sorted(partial)):
            entry = partial[index]
            if not entry["name"]:
                continue
            calls.append(
                ToolCall(
                    id=entry["id"] or f"call_{base_index + n}",
                    name=entry["name"],
                    arguments=entry["arguments"] or "{}",
                )
            )
        return calls

    async def chat_stream(
        self,
        max_iterations: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """Streaming variant of :meth:`chat` with cancellation and loop detection.

        Content deltas are emitted as ``chat-stream`` events while they arrive.

        Returns:
            ChatResponse whose ``stop_reason`` tells a finished answer (``None``)
            apart from an early stop. ``"cancelled"`` means the stop signal was
            seen; ``"repeated_call"`` means the same tool call came back twice in
            a row and the task did not complete. Callers must check it.

        Raises:
            MaxIterationsError: when the budget runs out first
            LLMError: when a completion call fails
        """
        limit = self.config.agent.max_iterations if max_iterations is None else max_iterations
        if cancel_event is None:
            self._stop_requested.clear()
            cancel_event = self._stop_requested

        total_tool_calls = 0
        last_signature: str | None = None
        consecutive_repeats = 0

        for iteration in range(limit):
            if cancel_event.is_set():
                return self._cancelled(iteration, total_tool_calls)

            self.prune_history()

            full_content = ""
            partial: dict[int, dict[str, str]] = {}
            stopped_mid_stream = False
            stream = self.provider.complete_streaming(self._build_messages(), tools=self.executor.definitions())
            async with aclosing(stream):
                async for delta in stream:
                    if delta.content:
                        full_content += delta.content
                        self._emit_chunk(StreamChunk(content=delta.content))
                    for fragment in delta.tool_calls:
                        entry = partial.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                        if fragment.id:
                            entry["id"] = fragment.id
                        if fragment.name:
                            entry["name"] = fragment.name
                        entry["arguments"] += fragment.arguments
                    if cancel_event.is_set():
                        stopped_mid_stream = True
                        break

            if stopped_mid_stream:
                self._append(Message(role="assistant", content=full_content))
                return self._cancelled(iteration + 1, total_tool_calls)

            calls = self._collect_streamed_calls(partial, total_tool_calls)
            if not calls:
                calls = extract_tool_calls(full_content, base_index=total_tool_calls)

            self._append(Message(role="assistant", content=full_content, tool_calls=list(calls)))

            if not calls:
                self._emit_chunk(StreamChunk(done=True))
                clean, thinking = split_thinking(full_content)
                return ChatResponse(
                    content=clean,
                    thinking=thinking,
                    tool_calls_made=total_tool_calls,
                    iterations=iteration + 1,
                )

            total_tool_calls += len(calls)
            self._emit_chunk(StreamChunk(tool_calls=[asdict(call) for call in calls]))

            for position, call in enumerate(calls):
                signature = f"{call.name}:{call.arguments}"
                consecutive_repeats = consecutive_repeats + 1 if signature == last_signature else 0
                last_signature = signature
                if consecutive_repeats >= REPEAT_LIMIT:
                    log.warning("Loop detected", tool=call.name, repeats=consecutive_repeats)
                    for skipped in calls[position:]:
                        self._skip_tool(skipped)
                    notice = f"\n\n*[Stopped: repeated call to {call.name} detected]*"
                    self._emit_chunk(StreamChunk(content=notice, done=True))
                    return ChatResponse(
                        content=notice.strip(),
                        tool_calls_made=total_tool_calls,
                        iterations=iteration + 1,
                        stop_reason="repeated_call",
                    )
                await self._run_tool(call)

        self._emit_chunk(StreamChunk(done=True))
        log.warning("Maximum iterations reached", max_iterations=limit)
        raise MaxIterationsError(limit)


def make_agent_factory(
    provider: LLMProvider,
    registry: ToolRegistry,
    config: Config,
    events: EventSink | None = None,
    policy: ExecutionPolicy | None = None,
    user_id: str | None = None,
) -> AgentFactory:
    """Return a builder for sub-agents that share the parent's tool instances."""

    def factory(system_prompt: str, tool_names: list[str]) -> ConversationAgent:
        return ConversationAgent(
            provider=provider,
            registry=registry.subset(tool_names),
            config=config,
            system_prompt=system_prompt,
            user_id=user_id,
            events=events,
            policy=policy,
        )

    return factory


def create_agent(
    config: Config | None = None,
    provider: LLMProvider | None = None,
    knowledge_store: KnowledgeStore | None = None,
    events: EventSink | None = None,
    enabled_tools: dict[str, bool] | None = None,
    grok_provider: LLMProvider | None = None,
) -> ConversationAgent:
    """Wire provider, tool catalogue and policy into a ready agent."""
    config = config or get_config()
    provider = provider or create_provider_from_config(config)
    policy = ExecutionPolicy.from_config(config.mode, enabled_tools)
    registry = ToolRegistry()
    factory = make_agent_factory(provider, registry, config, events, policy, config.agent.user_id)
    build_default_registry(
        config,
        registry=registry,
        provider=provider,
        agent_factory=factory,
        knowledge_store=knowledge_store,
        events=events,
        grok_provider=grok_provider,
    )
    return ConversationAgent(
        provider=provider,
        registry=registry,
        config=config,
        events=events,
        policy=policy,
    )
