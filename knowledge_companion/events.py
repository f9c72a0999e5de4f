"""Fire-and-forget notifications to the presentation layer."""

from typing import Any, Callable

from knowledge_companion.logging import get_logger

log = get_logger(__name__)

EventSink = Callable[[str, Any], None]

# Event names
CHAT_STREAM = "chat-stream"
CANVAS_UPDATE = "native-canvas-update"
CANVAS_SPLIT = "canvas-split"
CONTENT_CHANGED = "content-changed"
STUDY_GUIDE_GENERATED = "study-guide-generated"
BRAINSTORM_GENERATED = "brainstorm-generated"
AGENT_CONSULTED = "agent-consulted"
RESEARCH_PROGRESS = "research-progress"


def emit(sink: EventSink | None, event: str, payload: Any) -> None:
    """Deliver an event to the sink; failures never reach the caller."""
    if sink is None:
        return
    try:
        sink(event, payload)
    except Exception as e:
        log.debug("Event sink failed", event_name=event, error=str(e))


class EventRecorder:
    """In-memory sink that keeps every emitted event in order."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    def __call__(self, event: str, payload: Any) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> list[Any]:
        return [payload for name, payload in self.events if name == event]
