"""Local tools available to subagent workers.

Every tool exposes a JSON-schema definition for LLM function calling and an
async ``execute(args)`` returning a ToolResult. All filesystem access is
confined to the tool's working directory.

Tools:
- bash: Run a shell command in the working directory
- text_editor: View, create, and edit files (view/create/str_replace/insert)
- search: Case-insensitive text search across files
"""

import asyncio
import contextlib
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from agent_swarm.agents.errors import ToolArgumentError
from agent_swarm.config import settings

logger = structlog.get_logger()

# Guard against commands that either never terminate or are clearly harmful.
_BLOCKED_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\brm\s+-rf\s+/(?:\s|$)"),
    re.compile(r"\brm\s+-rf\s+/\*"),
    re.compile(r"\b(?:shutdown|reboot|halt|poweroff)\b", re.IGNORECASE),
    re.compile(r"\bmkfs\.", re.IGNORECASE),
    re.compile(r"\bdd\s+if=.*\s+of=/dev/", re.IGNORECASE),
    re.compile(r":\(\)\{:\|:&\};:"),
)

# Directories never worth searching
_SKIPPED_DIRECTORIES = frozenset({
    ".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".ruff_cache", "dist", "build",
})
MAX_SEARCH_FILE_BYTES = 1_000_000
DEFAULT_SEARCH_RESULTS = 50


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        success: Whether the tool execution succeeded
        output: Output text (may be present on failure, e.g. command stderr)
        error: Error message if execution failed
    """

    success: bool
    output: str = ""
    error: str | None = None

    def to_llm_content(self) -> str:
        """Text the model sees for this result."""
        if self.success:
            return self.output
        if self.error and self.output:
            return f"{self.error}\n{self.output}"
        return self.error or self.output


def truncate_text(text: str, *, max_chars: int | None = None) -> str:
    """Trim large text payloads while preserving a clear truncation marker."""
    limit = max_chars if max_chars is not None else settings.tool_output_max_chars
    if len(text) <= limit:
        return text
    omitted = len(text) - limit
    return f"{text[:limit]}\n... [truncated {omitted} characters to protect context window]"


def resolve_workspace_path(root: Path, path: str) -> Path:
    """Resolve ``path`` against ``root`` and reject anything outside it.

    Relative paths are joined to the root. Absolute paths are accepted only
    when they already point inside the root.

    Raises:
        ToolArgumentError: If the path is empty or escapes the root
    """
    if not path or not path.strip():
        raise ToolArgumentError("Path cannot be empty")

    root = root.resolve()
    candidate = Path(path.strip())
    resolved = (candidate if candidate.is_absolute() else root / candidate).resolve()

    try:
        resolved.relative_to(root)
    except ValueError:
        raise ToolArgumentError(f"Path traversal blocked: {path}") from None

    return resolved


class BaseTool(ABC):
    """A tool a worker can call.

    Subclasses declare ``name``, ``description`` and a JSON-schema
    ``parameters`` object and implement ``_run``. ``execute`` validates the
    arguments against the schema first; argument errors become failed
    results, while unexpected exceptions propagate to the caller.
    """

    name: str
    description: str
    parameters: dict[str, Any]

    def __init__(self, working_directory: str | os.PathLike[str] | None = None) -> None:
        self.root = Path(working_directory or settings.workspace_root).resolve()

    def get_tool_definition(self) -> dict[str, Any]:
        """Get this tool's definition in the format expected by LiteLLM."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def execute(self, args: dict[str, Any]) -> ToolResult:
        """Validate ``args`` and run the tool."""
        try:
            normalized = self._normalize_args(args)
            return await self._run(normalized)
        except ToolArgumentError as e:
            return ToolResult(success=False, error=str(e))

    @abstractmethod
    async def _run(self, args: dict[str, Any]) -> ToolResult:
        """Run the tool with validated arguments."""

    def _normalize_args(self, args: Any) -> dict[str, Any]:
        """Validate and normalize arguments against the schema."""
        if not isinstance(args, dict):
            raise ToolArgumentError(f"Invalid arguments for {self.name}: expected an object")

        properties = self.parameters.get("properties", {})
        required = self.parameters.get("required", [])

        normalized: dict[str, Any] = {}
        for key, value in args.items():
            spec = properties.get(key)
            if spec is None:
                # Ignore unknown fields to keep calls resilient to model drift.
                continue

            expected = spec.get("type")
            if expected == "string" and not isinstance(value, str):
                raise ToolArgumentError(f"Invalid type for '{key}': expected string")
            if expected == "integer":
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    raise ToolArgumentError(
                        f"Invalid type for '{key}': expected integer"
                    ) from None
            if "enum" in spec and value not in spec["enum"]:
                allowed = ", ".join(spec["enum"])
                raise ToolArgumentError(f"Invalid value for '{key}': expected one of {allowed}")
            normalized[key] = value

        missing = sorted(req for req in required if normalized.get(req) in (None, ""))
        if missing:
            raise ToolArgumentError(f"Missing required arguments: {', '.join(missing)}")

        return normalized


class BashTool(BaseTool):
    """Run a shell command in the working directory."""

    name = "bash"
    description = (
        "Execute a shell command in the working directory. Use for running "
        "tests, builds, linters and inspecting the environment. Commands are "
        "non-interactive and time out."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Shell command to execute",
            },
        },
        "required": ["command"],
    }

    def __init__(
        self,
        working_directory: str | os.PathLike[str] | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(working_directory)
        self.timeout = timeout if timeout is not None else settings.tool_timeout_seconds

    def _preflight_command(self, command: str) -> None:
        """Reject commands that are harmful or unsuitable for agent loops."""
        if "\x00" in command:
            raise ToolArgumentError("Command contains null byte")
        for pattern in _BLOCKED_COMMAND_PATTERNS:
            if pattern.search(command):
                raise ToolArgumentError(
                    "Command blocked by safety policy: potentially destructive operation"
                )

    async def _run(self, args: dict[str, Any]) -> ToolResult:
        command = args["command"].strip()
        self._preflight_command(command)

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=self.root,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            logger.warning("bash_command_timeout", command=command[:200], timeout=self.timeout)
            return ToolResult(
                success=False,
                error=f"Command timed out after {self.timeout}s",
            )

        output = self._compose_output(
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        if process.returncode != 0:
            return ToolResult(
                success=False,
                output=output,
                error=f"Command exited with code {process.returncode}",
            )
        return ToolResult(success=True, output=output or "(no output)")

    @staticmethod
    def _compose_output(stdout: str, stderr: str) -> str:
        """Combine stdout/stderr into one report."""
        clean_stdout = stdout.strip()
        clean_stderr = stderr.strip()
        if clean_stdout and clean_stderr:
            return truncate_text(f"STDOUT:\n{clean_stdout}\n\nSTDERR:\n{clean_stderr}")
        return truncate_text(clean_stdout or clean_stderr)


class TextEditorTool(BaseTool):
    """View, create, and edit text files under the working directory."""

    name = "text_editor"
    description = (
        "View, create and edit files. Commands: 'view' shows a file with line "
        "numbers (or lists a directory); 'create' writes file_text to path; "
        "'str_replace' replaces old_str, which must occur exactly once, with "
        "new_str; 'insert' inserts new_str after line insert_line (0 = top)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "enum": ["view", "create", "str_replace", "insert"],
                "description": "Editor operation",
            },
            "path": {
                "type": "string",
                "description": "File path relative to the working directory",
            },
            "file_text": {
                "type": "string",
                "description": "Full file content for 'create'",
            },
            "old_str": {
                "type": "string",
                "description": "Exact text to replace for 'str_replace'",
            },
            "new_str": {
                "type": "string",
                "description": "Replacement text for 'str_replace' or text for 'insert'",
            },
            "insert_line": {
                "type": "integer",
                "description": "Line number after which to insert for 'insert'",
            },
        },
        "required": ["command", "path"],
    }

    async def _run(self, args: dict[str, Any]) -> ToolResult:
        path = resolve_workspace_path(self.root, args["path"])
        command = args["command"]

        if command == "view":
            return await asyncio.to_thread(self._view, path)
        if command == "create":
            if "file_text" not in args:
                raise ToolArgumentError("Missing required arguments: file_text")
            return await asyncio.to_thread(self._create, path, args["file_text"])
        if command == "str_replace":
            if not args.get("old_str"):
                raise ToolArgumentError("Missing required arguments: old_str")
            return await asyncio.to_thread(
                self._str_replace, path, args["old_str"], args.get("new_str", "")
            )
        if "insert_line" not in args or "new_str" not in args:
            raise ToolArgumentError("Missing required arguments: insert_line, new_str")
        return await asyncio.to_thread(
            self._insert, path, args["insert_line"], args["new_str"]
        )

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix() or "."

    def _view(self, path: Path) -> ToolResult:
        if path.is_dir():
            entries = sorted(
                f"{child.name}/" if child.is_dir() else child.name
                for child in path.iterdir()
            )
            return ToolResult(success=True, output="\n".join(entries) or "(empty directory)")
        if not path.is_file():
            return ToolResult(success=False, error=f"File not found: {self._relative(path)}")

        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        numbered = "\n".join(f"{number:6}\t{line}" for number, line in enumerate(lines, 1))
        return ToolResult(success=True, output=truncate_text(numbered))

    def _create(self, path: Path, file_text: str) -> ToolResult:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(file_text, encoding="utf-8")
        return ToolResult(success=True, output=f"Created {self._relative(path)}")

    def _str_replace(self, path: Path, old_str: str, new_str: str) -> ToolResult:
        if not path.is_file():
            return ToolResult(success=False, error=f"File not found: {self._relative(path)}")

        content = path.read_text(encoding="utf-8")
        occurrences = content.count(old_str)
        if occurrences == 0:
            return ToolResult(
                success=False,
                error=f"old_str not found in {self._relative(path)}",
            )
        if occurrences > 1:
            return ToolResult(
                success=False,
                error=(
                    f"old_str occurs {occurrences} times in {self._relative(path)}; "
                    "include more context to make it unique"
                ),
            )

        path.write_text(content.replace(old_str, new_str, 1), encoding="utf-8")
        return ToolResult(success=True, output=f"Edited {self._relative(path)}")

    def _insert(self, path: Path, insert_line: int, new_str: str) -> ToolResult:
        if not path.is_file():
            return ToolResult(success=False, error=f"File not found: {self._relative(path)}")

        lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
        if not 0 <= insert_line <= len(lines):
            return ToolResult(
                success=False,
                error=f"insert_line {insert_line} is outside 0..{len(lines)}",
            )

        if lines and not lines[-1].endswith("\n") and insert_line == len(lines):
            lines[-1] += "\n"
        text = new_str if new_str.endswith("\n") else f"{new_str}\n"
        lines.insert(insert_line, text)
        path.write_text("".join(lines), encoding="utf-8")
        return ToolResult(
            success=True,
            output=f"Inserted text after line {insert_line} of {self._relative(path)}",
        )


class SearchTool(BaseTool):
    """Case-insensitive text search across files."""

    name = "search"
    description = (
        "Search for text across files under a directory (case-insensitive). "
        "Returns matching lines as path:line: text."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Text to search for",
            },
            "path": {
                "type": "string",
                "description": "Directory to search in, default '.'",
            },
            "max_results": {
                "type": "integer",
                "description": f"Maximum matches to return, default {DEFAULT_SEARCH_RESULTS}",
            },
        },
        "required": ["query"],
    }

    async def _run(self, args: dict[str, Any]) -> ToolResult:
        base = resolve_workspace_path(self.root, args.get("path") or ".")
        max_results = max(1, args.get("max_results", DEFAULT_SEARCH_RESULTS))
        matches = await asyncio.to_thread(self._search, base, args["query"], max_results)

        if not matches:
            return ToolResult(success=True, output=f"No matches for '{args['query']}'")
        return ToolResult(success=True, output=truncate_text("\n".join(matches)))

    def _search(self, base: Path, query: str, max_results: int) -> list[str]:
        needle = query.lower()
        matches: list[str] = []
        files = [base] if base.is_file() else self._iter_files(base)

        for file_path in files:
            # Dangling symlinks and unreadable files are skipped
            try:
                if file_path.stat().st_size > MAX_SEARCH_FILE_BYTES:
                    continue
                text = file_path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(text.splitlines(), 1):
                if needle in line.lower():
                    relative = file_path.relative_to(self.root).as_posix()
                    matches.append(f"{relative}:{number}: {line.strip()[:300]}")
                    if len(matches) >= max_results:
                        return matches
        return matches

    @staticmethod
    def _iter_files(base: Path) -> list[Path]:
        files: list[Path] = []
        for directory, subdirectories, filenames in os.walk(base):
            subdirectories[:] = sorted(d for d in subdirectories if d not in _SKIPPED_DIRECTORIES)
            files.extend(Path(directory) / name for name in sorted(filenames))
        return files


DEFAULT_TOOL_CLASSES: dict[str, type[BaseTool]] = {
    BashTool.name: BashTool,
    TextEditorTool.name: TextEditorTool,
    SearchTool.name: SearchTool,
}


def create_default_tools(
    working_directory: str | os.PathLike[str] | None = None,
) -> dict[str, BaseTool]:
    """Instantiate every local tool rooted at ``working_directory``."""
    return {name: tool_cls(working_directory) for name, tool_cls in DEFAULT_TOOL_CLASSES.items()}
