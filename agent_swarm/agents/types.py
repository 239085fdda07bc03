"""Task, role, and result types shared by the resolver, workers, and orchestrator.

Tasks and configs are frozen pydantic models: they are produced by a planner
or merged from role defaults once and never mutated afterwards. Status and
result records are plain dataclasses owned by the worker that fills them in.
"""

import time
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agent_swarm.agents.llm import ToolCallData


class SubagentRole(StrEnum):
    """Worker specializations. Each role has its own tools and prompt."""

    GENERAL = "general"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    REFACTORING = "refactoring"
    ANALYSIS = "analysis"
    DEBUG = "debug"
    PERFORMANCE = "performance"


class SubagentState(StrEnum):
    """Lifecycle states of a worker executing one task.

    PENDING -> RUNNING -> {COMPLETED | FAILED | CANCELLED}
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChatEntry(BaseModel):
    """One display-oriented conversation entry."""

    model_config = ConfigDict(frozen=True)

    type: Literal["user", "assistant", "tool_result"]
    content: str = ""
    timestamp: float = Field(default_factory=time.time)
    tool_name: str | None = None
    success: bool | None = None


class TaskContext(BaseModel):
    """Optional context handed to a worker along with its task."""

    model_config = ConfigDict(frozen=True)

    working_directory: str | None = None
    conversation_history: tuple[ChatEntry, ...] = ()
    files: tuple[str, ...] = ()
    code_snippets: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubagentTask(BaseModel):
    """A unit of work produced by an external planner.

    Attributes:
        id: Unique id within one task set
        description: What the worker should accomplish
        dependencies: Ids of tasks that must complete first, in order
        priority: Scheduling preference; higher runs first
        role: Explicit role; inferred from the description when omitted
        context: Working directory and recent conversation
        max_tool_rounds: Per-task override of the role's round budget
        timeout: Per-task override of the wall-clock budget, in seconds
    """

    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    dependencies: tuple[str, ...] = ()
    priority: float = 0
    role: SubagentRole | None = None
    context: TaskContext | None = None
    max_tool_rounds: int | None = Field(default=None, ge=1)
    timeout: float | None = Field(default=None, gt=0)


class SubagentConfig(BaseModel):
    """Effective configuration of one worker, fixed at construction."""

    model_config = ConfigDict(frozen=True)

    role: SubagentRole
    allowed_tools: tuple[str, ...]
    max_tool_rounds: int = Field(ge=1)
    context_depth: int = 20
    priority: int = 1
    timeout: float | None = None
    custom_system_prompt: str | None = None


# (allowed_tools, max_tool_rounds, context_depth, priority)
ROLE_DEFAULTS: dict[SubagentRole, tuple[tuple[str, ...], int, int, int]] = {
    SubagentRole.GENERAL: (("bash", "text_editor", "search"), 30, 20, 1),
    SubagentRole.TESTING: (("bash", "text_editor", "search"), 20, 15, 2),
    SubagentRole.DOCUMENTATION: (("text_editor", "search"), 15, 10, 2),
    SubagentRole.REFACTORING: (("text_editor", "search", "bash"), 25, 20, 2),
    SubagentRole.ANALYSIS: (("search", "bash"), 15, 15, 3),
    SubagentRole.DEBUG: (("bash", "text_editor", "search"), 25, 20, 3),
    SubagentRole.PERFORMANCE: (("bash", "search", "text_editor"), 20, 15, 2),
}


def get_default_config(role: SubagentRole, **overrides: Any) -> SubagentConfig:
    """Merge a role's defaults with caller overrides.

    Overrides set to None are ignored so callers can pass optional values
    straight through.

    Args:
        role: The worker role
        **overrides: Any SubagentConfig field

    Returns:
        The merged, immutable config
    """
    allowed_tools, max_tool_rounds, context_depth, priority = ROLE_DEFAULTS[role]
    values: dict[str, Any] = {
        "role": role,
        "allowed_tools": allowed_tools,
        "max_tool_rounds": max_tool_rounds,
        "context_depth": context_depth,
        "priority": priority,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    return SubagentConfig(**values)


def parse_subagent_role(value: str | None) -> SubagentRole:
    """Parse a role name, falling back to GENERAL for unknown values."""
    if not value:
        return SubagentRole.GENERAL
    try:
        return SubagentRole(value.strip().lower())
    except ValueError:
        return SubagentRole.GENERAL


class SubagentMessage(BaseModel):
    """A message from the orchestrator to one worker."""

    model_config = ConfigDict(frozen=True)

    from_id: str
    to_id: str
    content: str
    type: Literal["task", "result", "status", "error", "cancellation"] = "status"
    timestamp: float = Field(default_factory=time.time)


@dataclass
class SubagentStatus:
    """Progress of a worker on its current (or last) task."""

    id: str
    task_id: str
    role: SubagentRole
    state: SubagentState = SubagentState.PENDING
    progress: int = 0
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    tools_used: list[str] = field(default_factory=list)
    tool_rounds_used: int = 0
    error: str | None = None

    def snapshot(self) -> "SubagentStatus":
        """Return a copy that later updates will not affect."""
        return replace(self, tools_used=list(self.tools_used))


@dataclass
class SubagentResult:
    """Outcome of one execute_task call (or of a task that never ran).

    Attributes:
        skipped: True when the orchestrator never dispatched the task
            because a dependency did not complete
    """

    id: str
    task_id: str
    role: SubagentRole
    success: bool
    status: SubagentStatus
    output: str = ""
    execution_time: float = 0.0
    files_modified: list[str] = field(default_factory=list)
    files_created: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallData] = field(default_factory=list)
    error: str | None = None
    skipped: bool = False
