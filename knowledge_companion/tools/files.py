"""Knowledge-base file tools.

All paths are relative to the knowledge base root. Reads are restricted to
markdown files inside the root; writes are additionally gated by the
executor's write scope before a handler runs.
"""

import os
from pathlib import Path
from typing import Any

from knowledge_companion.events import CONTENT_CHANGED, EventSink, emit
from knowledge_companion.logging import get_logger
from knowledge_companion.tools.registry import Tool, ToolResult

log = get_logger(__name__)

SCAN_IGNORED_DIRS = {"node_modules", "target", "dist", "build", "coverage"}
LIST_IGNORED_DIRS = {"node_modules", "target", ".git", ".vscode", "dist", "build", "coverage"}
MAX_LISTED_FILES = 500
MAX_SEARCH_RESULTS = 10


def _relative(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()


def _resolve_inside(root: Path, relative: str) -> Path | None:
    """Join ``relative`` onto ``root``; None when the result escapes the root."""
    candidate = (root / relative).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    return candidate


class _KnowledgeBaseTool(Tool):
    requires_filesystem = True

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser().resolve()


class ReadFileTool(_KnowledgeBaseTool):
    """Read one markdown file from the knowledge base."""

    name = "read_file"
    description = (
        "Read the complete contents of a markdown file from the knowledge base. "
        "Use the path from search_knowledge or list_markdown_files."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Relative path to the markdown file (e.g., 'research/adhd-database.md')",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        full_path = _resolve_inside(self.root, str(path))
        if full_path is None:
            return ToolResult.fail("Path must be within repository root")
        if full_path.suffix != ".md":
            return ToolResult.fail("Only markdown (.md) files can be read")
        try:
            content = full_path.read_text(encoding="utf-8")
        except OSError as e:
            log.debug("Read failed", path=path, error=str(e))
            return ToolResult.fail(f"Failed to read file: {e}")
        return ToolResult(data={"path": path, "content": content, "size": len(content.encode("utf-8"))})


class SearchKnowledgeTool(_KnowledgeBaseTool):
    """Keyword search over the markdown knowledge base."""

    name = "search_knowledge"
    description = (
        "Search the loaded markdown knowledge base for information on a topic. "
        "Returns matching files with snippets."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query",
            },
        },
        "required": ["query"],
    }

    def __init__(self, root: Path | str, folders: list[str]):
        super().__init__(root)
        self.folders = list(folders)

    def _iter_markdown(self):
        for folder in self.folders:
            folder_path = self.root / folder
            if not folder_path.is_dir():
                continue
            for dirpath, _, filenames in os.walk(folder_path, followlinks=True):
                for filename in filenames:
                    if filename.endswith(".md"):
                        yield Path(dirpath) / filename

    @staticmethod
    def score_document(query: str, filename: str, content: str) -> tuple[int, int]:
        """Return ``(score, matched_tokens)``.

        Phrase in content +10, phrase in filename +20, each token in
        content +1, each token in filename +2.
        """
        query_lower = query.lower()
        content_lower = content.lower()
        filename_lower = filename.lower()
        score = 0
        matches = 0
        if query_lower in content_lower:
            score += 10
        if query_lower in filename_lower:
            score += 20
        for token in query_lower.split():
            if token in content_lower:
                score += 1
                matches += 1
            if token in filename_lower:
                score += 2
        return score, matches

    @staticmethod
    def snippet(query: str, content: str) -> str:
        """Text around the phrase match, else around the first matching token."""
        query_lower = query.lower()
        content_lower = content.lower()
        position = content_lower.find(query_lower)
        if position < 0:
            position = 0
            for token in query_lower.split():
                found = content_lower.find(token)
                if found >= 0:
                    position = found
                    break
        start = max(0, position - 50)
        return content[start:position + 150]

    async def execute(self, query: str, **kwargs: Any) -> ToolResult:
        results: list[dict[str, Any]] = []
        for path in self._iter_markdown():
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            score, matches = self.score_document(query, path.name, content)
            if score <= 0:
                continue
            results.append(
                {
                    "path": _relative(path, self.root) if path.is_relative_to(self.root) else str(path),
                    "title": path.name,
                    "snippet": self.snippet(query, content),
                    "score": score,
                    "matches": matches,
                }
            )

        results.sort(key=lambda item: item["score"], reverse=True)
        results = results[:MAX_SEARCH_RESULTS]
        data: dict[str, Any] = {"query": query, "results": results, "count": len(results)}
        if not results:
            data["message"] = "No matches found in markdown files"
        return ToolResult(data=data)


class ListMarkdownFilesTool(_KnowledgeBaseTool):
    """List markdown files under the knowledge base or one folder of it."""

    name = "list_markdown_files"
    description = "List available markdown files in the knowledge base"
    parameters = {
        "type": "object",
        "properties": {
            "folder": {
                "type": "string",
                "description": "Optional folder to search in (e.g., 'research', 'dumps')",
            },
        },
    }

    async def execute(self, folder: str | None = None, **kwargs: Any) -> ToolResult:
        search_path = self.root / folder if folder else self.root
        if not search_path.exists():
            return ToolResult.fail(f"Folder not found: {search_path}")

        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(search_path):
            dirnames[:] = [
                name for name in dirnames
                if not name.startswith(".") and name not in LIST_IGNORED_DIRS
            ]
            for filename in filenames:
                if filename.startswith(".") or not filename.endswith(".md"):
                    continue
                full_path = Path(dirpath) / filename
                if full_path.is_relative_to(self.root):
                    files.append(_relative(full_path, self.root))

        files.sort()
        total = len(files)
        return ToolResult(
            data={
                "files": files[:MAX_LISTED_FILES],
                "count": min(total, MAX_LISTED_FILES),
                "total_found": total,
                "folder": folder or "root",
                "message": "Result truncated to first 500 files" if total > MAX_LISTED_FILES else "Success",
            }
        )


class ScanCodebaseTool(_KnowledgeBaseTool):
    """Walk the project tree to a bounded depth."""

    name = "scan_codebase"
    description = (
        "Scan the codebase structure. Lists files and directories to understand "
        "project layout. Respects .gitignore patterns."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Relative path to start scanning from (default: root)",
            },
            "max_depth": {
                "type": "integer",
                "description": "Maximum depth to traverse (default: 3)",
            },
        },
    }

    async def execute(self, path: str = ".", max_depth: int = 3, **kwargs: Any) -> ToolResult:
        start = path or "."
        target = self.root / start
        if not target.exists():
            return ToolResult.fail(f"Path does not exist: {start}")

        depth_limit = max(0, int(max_depth))
        files: list[str] = []
        directories: list[str] = []
        base_depth = len(target.parts)

        for dirpath, dirnames, filenames in os.walk(target):
            current = Path(dirpath)
            depth = len(current.parts) - base_depth
            dirnames[:] = [
                name for name in dirnames
                if not name.startswith(".") and name not in SCAN_IGNORED_DIRS
            ]
            if current != target:
                directories.append(_relative(current, self.root))
            if depth >= depth_limit:
                dirnames[:] = []
                continue
            for filename in filenames:
                if filename.startswith("."):
                    continue
                files.append(_relative(current / filename, self.root))

        files.sort()
        directories.sort()
        return ToolResult(
            data={
                "root": start,
                "directories": directories,
                "files": files,
                "total_files": len(files),
                "total_directories": len(directories),
            }
        )


class WriteFileTool(_KnowledgeBaseTool):
    """Create, overwrite or append to a file in the knowledge base."""

    name = "write_file"
    description = (
        "Write/create a markdown file in the knowledge base. Can create new files "
        "or overwrite existing ones."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Relative path for the file (e.g., 'research/new-guide.md', 'dumps/notes.md')",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "append": {
                "type": "boolean",
                "description": "If true, append to existing file. If false, overwrite. Default: false",
            },
        },
        "required": ["path", "content"],
    }
    mutates = True

    def __init__(self, root: Path | str, events: EventSink | None = None):
        super().__init__(root)
        self.events = events

    def write_paths(self, arguments: dict[str, Any]) -> list[str]:
        return [str(arguments.get("path") or "")]

    async def execute(self, path: str, content: str, append: bool = False, **kwargs: Any) -> ToolResult:
        full_path = _resolve_inside(self.root, str(path))
        if full_path is None:
            return ToolResult.fail("Path must be within repository root")
        text = str(content)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            with open(full_path, "a" if append else "w", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult.fail(f"Failed to write file: {e}")

        log.info("File written", path=path, append=bool(append), size=len(text))
        emit(self.events, CONTENT_CHANGED, None)
        return ToolResult(
            data={
                "path": path,
                "size": len(text.encode("utf-8")),
                "operation": "append" if append else "write",
                "message": f"Successfully {'appended to' if append else 'wrote'} file at {path}",
            }
        )


class WriteFileBatchTool(_KnowledgeBaseTool):
    """Write several files in one call."""

    name = "write_file_batch"
    description = (
        "Writes multiple files to the codebase at once. Use this for creating "
        "components, refactoring, or applying multi-file changes."
    )
    parameters = {
        "type": "object",
        "properties": {
            "files": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": "Relative path to file"},
                        "content": {"type": "string", "description": "File content"},
                    },
                    "required": ["path", "content"],
                },
                "description": "List of files to write",
            },
        },
        "required": ["files"],
    }
    mutates = True
    enforce_required = False

    def __init__(self, root: Path | str, events: EventSink | None = None):
        super().__init__(root)
        self.events = events

    @staticmethod
    def _entries(files: Any) -> list[tuple[str, str]]:
        if not isinstance(files, list):
            return []
        entries = []
        for item in files:
            if isinstance(item, dict) and isinstance(item.get("path"), str) and isinstance(item.get("content"), str):
                entries.append((item["path"], item["content"]))
        return entries

    def write_paths(self, arguments: dict[str, Any]) -> list[str]:
        return [path for path, _ in self._entries(arguments.get("files"))]

    async def execute(self, files: Any = None, **kwargs: Any) -> ToolResult:
        if not isinstance(files, list):
            return ToolResult.fail("Missing 'files' argument")

        results: list[dict[str, Any]] = []
        for path, content in self._entries(files):
            full_path = _resolve_inside(self.root, path)
            if full_path is None:
                results.append({"path": path, "success": False, "error": "Path traversal detected"})
                continue
            try:
                full_path.parent.mkdir(parents=True, exist_ok=True)
                full_path.write_text(content, encoding="utf-8")
            except OSError as e:
                results.append({"path": path, "success": False, "error": str(e)})
                continue
            results.append({"path": path, "success": True})

        log.info("Batch write", files=len(results))
        emit(self.events, CONTENT_CHANGED, None)
        return ToolResult(data={"results": results})
