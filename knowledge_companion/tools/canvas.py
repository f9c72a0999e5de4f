"""Canvas tools: push previews, blocks and media to the UI canvas."""

from typing import Any

from knowledge_companion.events import CANVAS_SPLIT, CANVAS_UPDATE, EventSink, emit
from knowledge_companion.tools.registry import Tool, ToolResult

CANVAS_ACTIONS = ("preview", "add_block", "clear")
MEDIA_TYPES = ("youtube", "image", "url", "html")


def _unescape_newlines(value: Any) -> Any:
    # Some models double-escape newlines inside JSON strings.
    if isinstance(value, str):
        return value.replace("\\n", "\n")
    return value


class CanvasUpdateTool(Tool):
    """Send previews and content blocks to the dashboard canvas."""

    name = "canvas_update"
    description = (
        "Update the dashboard canvas. Use this to show previews, add content "
        "blocks, or clear the canvas."
    )
    parameters = {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": list(CANVAS_ACTIONS),
                "description": "The action to perform",
            },
            "target": {
                "type": "string",
                "enum": ["main", "left"],
                "description": "Target canvas (default: main)",
            },
            "type": {
                "type": "string",
                "description": "Content type (e.g., 'youtube', 'threejs', 'md', 'manifold')",
            },
            "content": {
                "type": "string",
                "description": "Text content or block content",
            },
            "url": {
                "type": "string",
                "description": "URL for previews or media",
            },
            "code": {
                "type": "string",
                "description": "Code for Three.js or Manifold visualizations",
            },
            "popup": {
                "type": "boolean",
                "description": "Whether to show as a popup",
            },
        },
        "required": ["action"],
    }

    def __init__(self, events: EventSink | None = None):
        self.events = events

    async def execute(
        self,
        action: str = "",
        target: str | None = None,
        type: str | None = None,
        content: str | None = None,
        url: str | None = None,
        code: str | None = None,
        popup: bool | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        action = str(action or "").strip()
        if action not in CANVAS_ACTIONS:
            return ToolResult.fail(f"Unknown action: {action}")

        if action == "preview":
            fields = {"target": target, "url": url, "code": _unescape_newlines(code), "type": type, "popup": popup}
            key = "preview"
        elif action == "add_block":
            fields = {"target": target, "content": _unescape_newlines(content), "type": type}
            key = "add_block"
        else:
            fields = {"target": target}
            key = "clear_canvas"

        payload = {key: {name: value for name, value in fields.items() if value is not None}}
        emit(self.events, CANVAS_UPDATE, payload)
        return ToolResult(data={"message": "Canvas update sent to frontend"})


class DisplayMediaTool(Tool):
    """Show a video, image or website on the canvas."""

    name = "display_media"
    description = (
        "Display media (video, image, or website) directly on the user's canvas. "
        "Use this after finding a relevant URL via web_search."
    )
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "The URL of the media to display (e.g., YouTube link, image URL)",
            },
            "type": {
                "type": "string",
                "enum": list(MEDIA_TYPES),
                "description": (
                    "The type of media. Use 'youtube' for videos, 'image' for direct "
                    "image links, 'url' for websites."
                ),
            },
        },
        "required": ["url", "type"],
    }
    enforce_required = False

    def __init__(self, events: EventSink | None = None):
        self.events = events

    async def execute(self, url: str = "", type: str = "", **kwargs: Any) -> ToolResult:
        url = str(url or "").strip()
        media_type = str(type or "").strip()
        if not url or not media_type:
            return ToolResult.fail("Missing url or type argument")
        emit(self.events, CANVAS_SPLIT, {"url": url, "type": media_type, "targetId": "main"})
        return ToolResult(data={"message": f"Displayed {media_type} on canvas"})
