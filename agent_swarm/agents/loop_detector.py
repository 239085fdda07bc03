"""Loop-safety governor for tool-calling workers.

Separates legitimate repetition (creating many files, reading many paths)
from unproductive repetition (retrying the same failing edit). Each tool
call is reduced to a signature; a call is a loop when its signature has
already reached the tool's threshold, or when the recent signature sequence
oscillates A-B-A-B.

Usage:
    >>> detector = LoopDetector()
    >>> check = detector.check_for_loop("bash", {"command": "npm test"})
    >>> if not check.is_loop:
    ...     result = await run_tool()
    ...     detector.record_tool_call("bash", {"command": "npm test"}, result.success)

check_for_loop never mutates state; record_tool_call is the only entry
point that does.
"""

import hashlib
import json
import math
import re
import time
from dataclasses import dataclass
from typing import Any

import structlog

from agent_swarm.agents.llm import normalize_tool_args
from agent_swarm.config import settings

logger = structlog.get_logger()

# Repetition ceilings per tool family. Exploratory tools are generous,
# precise edits are strict.
TOOL_THRESHOLDS: dict[str, int] = {
    "view_file": 10,
    "read_file": 10,
    "list_files": 8,
    "create_file": 15,
    "write_to_file": 15,
    "str_replace_editor": 4,
    "search_files": 6,
    "search": 6,
    "bash": 8,
    "execute_bash": 8,
    "create_todo_list": 3,
    "update_todo_list": 10,
}
DEFAULT_THRESHOLD = 5

# Counted per target path rather than per tool
PATH_TRACKED_TOOLS = frozenset(
    {"view_file", "read_file", "create_file", "write_to_file", "str_replace_editor"}
)

# Consecutive failures lower the threshold for these
FAILURE_SENSITIVE_TOOLS = frozenset({"str_replace_editor", "bash", "execute_bash"})
MIN_FAILURE_THRESHOLD = 2

SHELL_TOOLS = frozenset({"bash", "execute_bash"})
SEARCH_TOOLS = frozenset({"search", "search_files"})

# The composite editor tool is classified by its sub-command
TEXT_EDITOR_FAMILIES: dict[str, str] = {
    "view": "view_file",
    "create": "create_file",
    "str_replace": "str_replace_editor",
}

PATH_ARG_KEYS = ("path", "file_path", "filepath", "file")

LOOP_SUGGESTIONS: dict[str, str] = {
    "str_replace_editor": (
        "The text to replace may not match exactly. I should verify the file "
        "contents and adjust the search string."
    ),
    "bash": (
        "The command may need adjustment. I should check the error output and "
        "try a different approach."
    ),
    "execute_bash": (
        "The command may need adjustment. I should check the error output and "
        "try a different approach."
    ),
    "view_file": "I may already have the information I need from previous reads.",
    "read_file": "I may already have the information I need from previous reads.",
    "search": "I should try a different search query or look in a different location.",
    "search_files": "I should try a different search query or look in a different location.",
}
DEFAULT_SUGGESTION = "I should try a different approach."
CYCLE_SUGGESTION = "I should step back and try a different approach to make progress."

# An A-B pair seen this many times in a row is an oscillation
CYCLE_REPEAT_THRESHOLD = 3

EDIT_KEY_CHARS = 200

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class ToolCallRecord:
    """One recorded tool call."""

    signature: str
    tool_name: str
    args: dict[str, Any]
    timestamp: float
    success: bool
    file_path: str | None = None
    output_hash: str | None = None


@dataclass
class LoopDetectionResult:
    """Verdict for one candidate tool call.

    Attributes:
        is_loop: Whether the call should be treated as unproductive
        count: Occurrences of this signature including the candidate
        threshold: Effective threshold (math.inf when detection is off)
        reason: Human-readable explanation when is_loop is True
        suggestion: Advice to feed back to the model when is_loop is True
    """

    is_loop: bool
    count: int
    threshold: float
    reason: str | None = None
    suggestion: str | None = None


def _short_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]


def _extract_file_path(args: dict[str, Any]) -> str | None:
    for key in PATH_ARG_KEYS:
        value = args.get(key)
        if isinstance(value, str):
            return value
    return None


class LoopDetector:
    """Stateful, per-session loop detector.

    Create one instance per worker (or session) and reset it at session
    boundaries; instances share no state.

    Attributes:
        enabled: When False every check passes with an infinite threshold
        max_history_size: Records kept before pruning
        max_sequence_length: Signatures kept for cycle detection
    """

    def __init__(
        self,
        enabled: bool | None = None,
        max_history_size: int = 100,
        max_sequence_length: int = 20,
    ) -> None:
        self.enabled = settings.enable_loop_detection if enabled is None else enabled
        self.max_history_size = max_history_size
        self.max_sequence_length = max_sequence_length
        self._history: list[ToolCallRecord] = []
        self._signature_counts: dict[str, int] = {}
        self._failure_counts: dict[str, int] = {}
        self._recent_sequence: list[str] = []

    def check_for_loop(self, tool_name: str, args: Any) -> LoopDetectionResult:
        """Classify a candidate call before it is executed.

        Args:
            tool_name: Name of the tool the model wants to call
            args: Arguments as a dict or the raw JSON string

        Returns:
            The verdict. Internal errors fail open (never a loop).
        """
        if not self.enabled:
            return LoopDetectionResult(is_loop=False, count=0, threshold=math.inf)

        try:
            parsed = normalize_tool_args(args)
            family = self._tool_family(tool_name, parsed)
            signature = self._create_signature(family, parsed)
            current_count = self._signature_counts.get(signature, 0)
            threshold = self._adjusted_threshold(
                family, self._failure_counts.get(signature, 0)
            )

            if current_count >= threshold:
                return LoopDetectionResult(
                    is_loop=True,
                    count=current_count + 1,
                    threshold=threshold,
                    reason=(
                        f'Tool "{tool_name}" called {current_count + 1} times with '
                        f"same signature (threshold: {threshold})"
                    ),
                    suggestion=LOOP_SUGGESTIONS.get(family, DEFAULT_SUGGESTION),
                )

            pattern_count = self._count_cycle_repeats(signature)
            if pattern_count >= CYCLE_REPEAT_THRESHOLD:
                return LoopDetectionResult(
                    is_loop=True,
                    count=current_count + 1,
                    threshold=threshold,
                    reason=f"Similar operation sequence repeated {pattern_count} times",
                    suggestion=CYCLE_SUGGESTION,
                )

            return LoopDetectionResult(
                is_loop=False, count=current_count + 1, threshold=threshold
            )

        except Exception as e:
            logger.warning(
                "loop_check_failed_open",
                tool_name=tool_name,
                error_type=type(e).__name__,
                error=str(e),
            )
            return LoopDetectionResult(is_loop=False, count=0, threshold=math.inf)

    def record_tool_call(
        self,
        tool_name: str,
        args: Any,
        success: bool,
        output_hash: str | None = None,
    ) -> None:
        """Record an executed call and update the heuristics.

        Args:
            tool_name: Name of the tool that ran
            args: Arguments as a dict or the raw JSON string
            success: Whether the call succeeded
            output_hash: Optional digest of the output
        """
        parsed = normalize_tool_args(args)
        family = self._tool_family(tool_name, parsed)
        signature = self._create_signature(family, parsed)

        self._history.append(
            ToolCallRecord(
                signature=signature,
                tool_name=tool_name,
                args=parsed,
                timestamp=time.time(),
                success=success,
                file_path=_extract_file_path(parsed),
                output_hash=output_hash,
            )
        )
        self._signature_counts[signature] = self._signature_counts.get(signature, 0) + 1

        if success:
            self._failure_counts.pop(signature, None)
        else:
            self._failure_counts[signature] = self._failure_counts.get(signature, 0) + 1

        self._recent_sequence.append(signature)
        if len(self._recent_sequence) > self.max_sequence_length:
            self._recent_sequence.pop(0)

        self._cleanup()

    def reset(self) -> None:
        """Clear all tracking at a session boundary."""
        self._history.clear()
        self._signature_counts.clear()
        self._failure_counts.clear()
        self._recent_sequence.clear()

    def get_stats(self) -> dict[str, int]:
        """Return history size and signature counts for debugging."""
        return {
            "history_size": len(self._history),
            "unique_signatures": len(self._signature_counts),
            "failed_signatures": len(self._failure_counts),
        }

    def _tool_family(self, tool_name: str, args: dict[str, Any]) -> str:
        if tool_name == "text_editor":
            return TEXT_EDITOR_FAMILIES.get(str(args.get("command", "")), tool_name)
        return tool_name

    def _create_signature(self, family: str, args: dict[str, Any]) -> str:
        if family in PATH_TRACKED_TOOLS:
            path = _extract_file_path(args)
            if path:
                if family == "str_replace_editor":
                    old_str = args.get("old_str")
                    old_str = old_str if isinstance(old_str, str) else ""
                    return f"{family}:{path}:{_short_hash(old_str[:EDIT_KEY_CHARS])}"
                return f"{family}:{path}"

        if family in SHELL_TOOLS:
            command = args.get("command")
            command = command if isinstance(command, str) else ""
            return f"{family}:{_WHITESPACE_RE.sub(' ', command.strip())}"

        if family in SEARCH_TOOLS:
            query = args.get("query")
            query = query if isinstance(query, str) else ""
            return f"{family}:{query.strip().lower()}"

        canonical = json.dumps(args, sort_keys=True, default=str)
        return f"{family}:{_short_hash(canonical)}"

    def _adjusted_threshold(self, family: str, failure_count: int) -> int:
        base = TOOL_THRESHOLDS.get(family, DEFAULT_THRESHOLD)
        if family in FAILURE_SENSITIVE_TOOLS and failure_count > 0:
            return max(MIN_FAILURE_THRESHOLD, base - failure_count)
        return base

    def _count_cycle_repeats(self, current_signature: str) -> int:
        """Count consecutive A-B pairs ending with the candidate.

        The last three recorded signatures plus the candidate must read
        A-B-A-B with A != B; the count then includes both pairs in that
        window and every earlier pair that continues the alternation.
        """
        sequence = self._recent_sequence
        if len(sequence) < 3:
            return 0

        first, second = sequence[-3], sequence[-2]
        if first == second or sequence[-1] != first or current_signature != second:
            return 0

        pattern_count = 2
        i = len(sequence) - 4
        while i >= 1 and sequence[i] == second and sequence[i - 1] == first:
            pattern_count += 1
            i -= 2
        return pattern_count

    def _cleanup(self) -> None:
        """Prune history with a margin and drop stale signature counters."""
        if len(self._history) > self.max_history_size:
            remove_count = len(self._history) - self.max_history_size + 20
            del self._history[:remove_count]

        if len(self._signature_counts) > self.max_history_size * 2:
            recent = {record.signature for record in self._history[-self.max_history_size:]}
            for signature in list(self._signature_counts):
                if signature not in recent:
                    del self._signature_counts[signature]
                    self._failure_counts.pop(signature, None)
