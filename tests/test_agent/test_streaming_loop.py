import asyncio
import json

import pytest

from knowledge_companion.agent import CANCELLED_NOTICE, ConversationAgent
from knowledge_companion.config import Config
from knowledge_companion.events import CHAT_STREAM, EventRecorder
from knowledge_companion.exceptions import MaxIterationsError
from knowledge_companion.llm import LLMProvider, LLMResponse, Message, StreamDelta, ToolCallDelta
from knowledge_companion.tools.calculate import CalculateTool
from knowledge_companion.tools.registry import ToolRegistry


class StreamingProvider(LLMProvider):
    """Replays one scripted list of deltas per streaming call."""

    def __init__(self, scripts: list[list[StreamDelta]], repeat_last: bool = False):
        self.scripts = list(scripts)
        self.repeat_last = repeat_last
        self.calls: list[list[Message]] = []

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        return LLMResponse(content="")

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.calls.append(list(messages))
        if self.repeat_last and len(self.scripts) == 1:
            script = self.scripts[0]
        else:
            script = self.scripts.pop(0)
        for delta in script:
            yield delta

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


def _call_deltas(call_id: str, expression: str) -> list[StreamDelta]:
    arguments = json.dumps({"expression": expression})
    half = len(arguments) // 2
    return [
        StreamDelta(tool_calls=[ToolCallDelta(index=0, id=call_id, name="calculate", arguments=arguments[:half])]),
        StreamDelta(tool_calls=[ToolCallDelta(index=0, arguments=arguments[half:])]),
    ]


def _agent(provider: LLMProvider, events: EventRecorder) -> ConversationAgent:
    registry = ToolRegistry()
    registry.register(CalculateTool())
    return ConversationAgent(
        provider=provider,
        registry=registry,
        config=Config(),
        system_prompt="stream test",
        events=events,
    )


@pytest.mark.asyncio
async def test_stream_accumulates_tool_call_fragments_and_emits_content():
    provider = StreamingProvider(
        [
            [StreamDelta(content="Let me compute. ")] + _call_deltas("abc", "2*3"),
            [StreamDelta(content="The "), StreamDelta(content="answer is 6.")],
        ]
    )
    events = EventRecorder()
    agent = _agent(provider, events)
    agent.add_user_message("2*3?")

    response = await agent.chat_stream()

    assert response.content == "The answer is 6."
    assert response.tool_calls_made == 1
    assert response.iterations == 2

    tool_msg = agent.history[2]
    assert tool_msg.role == "tool"
    assert tool_msg.tool_call_id == "abc"
    assert json.loads(tool_msg.content)["result"] == 6

    chunks = events.named(CHAT_STREAM)
    streamed = "".join(chunk["content"] for chunk in chunks)
    assert "Let me compute. " in streamed
    assert "The answer is 6." in streamed
    assert any(chunk["tool_calls"] for chunk in chunks)
    assert chunks[-1]["done"] is True


@pytest.mark.asyncio
async def test_identical_calls_stop_after_second_repeat():
    provider = StreamingProvider([_call_deltas("same", "1+1")], repeat_last=True)
    events = EventRecorder()
    agent = _agent(provider, events)
    agent.add_user_message("keep adding")

    response = await agent.chat_stream(max_iterations=30)

    assert response.stop_reason == "repeated_call"
    assert len(provider.calls) == 3
    assert response.iterations == 3
    assert "[Stopped: repeated call to calculate detected]" in response.content

    # Every assistant tool call still has a matching tool message.
    last = agent.history[-1]
    assert last.role == "tool"
    assert json.loads(last.content) == {"success": False, "error": "Skipped: repeated call detected"}
    executed = [
        msg for msg in agent.history
        if msg.role == "tool" and json.loads(msg.content).get("success")
    ]
    assert len(executed) == 2

    final_chunk = events.named(CHAT_STREAM)[-1]
    assert final_chunk["done"] is True
    assert "repeated call to calculate" in final_chunk["content"]


@pytest.mark.asyncio
async def test_different_arguments_reset_repeat_counter():
    provider = StreamingProvider(
        [
            _call_deltas("a", "1+1"),
            _call_deltas("b", "1+1"),
            _call_deltas("c", "2+2"),
            _call_deltas("d", "2+2"),
            [StreamDelta(content="done")],
        ]
    )
    agent = _agent(provider, EventRecorder())
    agent.add_user_message("go")

    response = await agent.chat_stream()

    assert response.stop_reason is None
    assert response.content == "done"
    assert response.tool_calls_made == 4


@pytest.mark.asyncio
async def test_cancel_before_first_iteration_returns_cleanly():
    provider = StreamingProvider([[StreamDelta(content="never")]])
    events = EventRecorder()
    agent = _agent(provider, events)
    agent.add_user_message("hi")
    cancel = asyncio.Event()
    cancel.set()

    response = await agent.chat_stream(cancel_event=cancel)

    assert response.stop_reason == "cancelled"
    assert response.iterations == 0
    assert provider.calls == []
    assert events.named(CHAT_STREAM)[-1] == {
        "content": CANCELLED_NOTICE,
        "done": True,
        "tool_calls": None,
    }


@pytest.mark.asyncio
async def test_cancel_mid_stream_keeps_partial_answer():
    cancel = asyncio.Event()

    class CancellingProvider(StreamingProvider):
        async def complete_streaming(self, messages, tools=None, temperature=None, max_tokens=None):
            self.calls.append(list(messages))
            yield StreamDelta(content="Partial ")
            cancel.set()
            yield StreamDelta(content="answer")
            yield StreamDelta(content=" never seen")

    provider = CancellingProvider([])
    agent = _agent(provider, EventRecorder())
    agent.add_user_message("long question")

    response = await agent.chat_stream(cancel_event=cancel)

    assert response.stop_reason == "cancelled"
    assert agent.history[-1].role == "assistant"
    assert agent.history[-1].content == "Partial answer"


@pytest.mark.asyncio
async def test_request_stop_cancels_between_iterations():
    events = EventRecorder()

    class StoppingProvider(StreamingProvider):
        async def complete_streaming(self, messages, tools=None, temperature=None, max_tokens=None):
            self.calls.append(list(messages))
            for delta in _call_deltas("x", "3+3"):
                yield delta
            agent.request_stop()

    provider = StoppingProvider([])
    agent = _agent(provider, events)
    agent.add_user_message("go")

    response = await agent.chat_stream()

    assert response.stop_reason == "cancelled"
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_stream_iteration_cap_raises():
    provider = StreamingProvider([_call_deltas(f"c{n}", f"{n}+1") for n in range(3)])
    events = EventRecorder()
    agent = _agent(provider, events)
    agent.add_user_message("go")

    with pytest.raises(MaxIterationsError):
        await agent.chat_stream(max_iterations=3)

    assert len(provider.calls) == 3
    assert events.named(CHAT_STREAM)[-1]["done"] is True
