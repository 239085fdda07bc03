"""Event type definitions for the agent-swarm event system.

Every lifecycle transition of a task, a worker, or an LLM call produces an
event. Events for one run share a session_id and are published in the order
the transitions happen.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the agent-swarm system.

    Events are categorized by:
    - Run lifecycle: orchestrated run start and completion
    - Task lifecycle: start, progress, and the terminal outcomes
    - Tool activity: calls, results, and loop interventions
    - Worker lifecycle: spawn, messages, termination
    - Queue: task queueing and clearing
    - Observability: LLM metrics and errors
    """

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETE = "run_complete"
    SESSION_CLOSED = "session_closed"

    # Task lifecycle
    TASK_STARTED = "task_started"
    TASK_PROGRESS = "task_progress"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    TASK_SKIPPED = "task_skipped"

    # Tool activity
    AGENT_TOOL_CALL = "agent_tool_call"
    AGENT_TOOL_RESULT = "agent_tool_result"
    LOOP_DETECTED = "loop_detected"

    # Worker lifecycle
    SUBAGENT_SPAWNED = "subagent_spawned"
    SUBAGENT_MESSAGE = "subagent_message"
    SUBAGENT_TERMINATED = "subagent_terminated"

    # Queue
    TASKS_QUEUED = "tasks_queued"
    QUEUE_CLEARED = "queue_cleared"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"
    AGENT_ERROR = "agent_error"


class AgentEvent(BaseModel):
    """An event emitted during orchestrated execution.

    Payload schemas by event type:

    TASK_STARTED:
        - description: str - The task description
        - max_tool_rounds: int - Round budget for this task

    TASK_PROGRESS:
        - progress: int - Percent complete (0-90 while running)
        - content: str - Text produced in this round
        - round: int - Rounds used so far

    AGENT_TOOL_CALL:
        - tool: str - Tool name being called
        - tool_call_id: str - Model-assigned call id
        - args: dict - Summarized arguments

    AGENT_TOOL_RESULT:
        - tool: str - Tool that was called
        - tool_call_id: str - Model-assigned call id
        - success: bool - Whether the tool call succeeded
        - output: str - Output truncated to 100 characters

    LOOP_DETECTED:
        - tool: str - Tool whose call was blocked
        - reason: str - Why the call was classified as a loop
        - count: int - Occurrences including this one
        - threshold: int - Effective threshold

    TASK_COMPLETED / TASK_FAILED / TASK_CANCELLED:
        - success: bool
        - error: Optional[str]
        - execution_time: float - Seconds
        - tool_rounds_used: int

    TASK_SKIPPED:
        - reason: str - Which dependency did not complete

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    agent_id: str | None = None
    agent_role: str | None = None
    task_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class LLMMetrics(BaseModel):
    """Token usage and latency for one LLM call."""

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens
