"""Exceptions raised by the resolver, the workers, and the orchestrator."""


class AgentSwarmError(Exception):
    """Base class for all agent-swarm errors."""


class DependencyError(AgentSwarmError):
    """Raised when a task list has no safe execution order."""


class DanglingDependencyError(DependencyError):
    """Raised when a task depends on an id that is not in the task set."""

    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(
            f"Task '{task_id}' depends on non-existent task '{dependency_id}'"
        )
        self.task_id = task_id
        self.dependency_id = dependency_id


class CircularDependencyError(DependencyError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, task_ids: list[str]) -> None:
        super().__init__(
            f"Circular dependency detected involving tasks: {', '.join(task_ids)}"
        )
        self.task_ids = task_ids


class ToolArgumentError(AgentSwarmError, ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


class SubagentAborted(AgentSwarmError):
    """Raised inside a worker when its cancellation flag has been cleared."""

    def __init__(self) -> None:
        super().__init__("Task was aborted")


class SubagentTimeout(AgentSwarmError):
    """Raised when a task exceeds its wall-clock budget."""

    def __init__(self, elapsed: float, timeout: float) -> None:
        super().__init__(f"Task timeout after {elapsed:.1f}s (limit {timeout:.1f}s)")
        self.elapsed = elapsed
        self.timeout = timeout


class RoundLimitExceeded(AgentSwarmError):
    """Raised when a worker uses every tool round without finishing."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(
            f"Tool round limit ({max_rounds}) reached before task completion"
        )
        self.max_rounds = max_rounds


class AgentLimitExceeded(AgentSwarmError):
    """Raised when spawning would exceed the concurrent agent limit."""


class SubagentNotFound(AgentSwarmError):
    """Raised when a message targets a worker the orchestrator does not own."""
