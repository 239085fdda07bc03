"""Shared test fixtures for agent-swarm tests.

Provides an EventBus, scripted LLM clients, and in-memory fake tools so
tests never touch a real LLM API or run real shell commands.
"""

import sys
from collections import defaultdict
from pathlib import Path
from typing import Any

import pytest

# Ensure the repository root is on sys.path so that ``from tests.conftest
# import ...`` resolves when running pytest from the repository root.
_repo_root = str(Path(__file__).resolve().parent.parent)
if _repo_root not in sys.path:
    sys.path.insert(0, _repo_root)

from agent_swarm.agents.llm import LLMResponse, MockLLMClient, ToolCallData  # noqa: E402
from agent_swarm.agents.tools import BaseTool, ToolResult  # noqa: E402
from agent_swarm.agents.types import SubagentTask  # noqa: E402
from agent_swarm.events.bus import EventBus  # noqa: E402
from agent_swarm.events.types import AgentEvent, LLMMetrics  # noqa: E402

__all__ = [
    "FakeTool",
    "MockLLMClient",
    "RoutingMockLLMClient",
    "collect_events",
    "fake_tools",
    "make_llm_response",
    "make_task",
    "make_tool_call",
]

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    return EventBus()


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(
    name: str,
    args: dict[str, Any] | None = None,
    call_id: str = "tc_1",
    arguments: str | None = None,
) -> ToolCallData:
    """Create a ToolCallData, optionally with a raw argument string."""
    return ToolCallData(id=call_id, name=name, args=args or {}, arguments=arguments)


def make_task(
    task_id: str,
    dependencies: tuple[str, ...] = (),
    priority: float = 0,
    description: str | None = None,
    **kwargs: Any,
) -> SubagentTask:
    """Create a SubagentTask with a generic description."""
    return SubagentTask(
        id=task_id,
        description=description or f"Implement {task_id}",
        dependencies=dependencies,
        priority=priority,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


async def collect_events(event_bus: EventBus, session_id: str) -> list[AgentEvent]:
    """Subscribe to a session and drain all buffered events after a run."""
    queue = event_bus.subscribe(session_id)
    events: list[AgentEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Fake Tools
# ---------------------------------------------------------------------------


class FakeTool(BaseTool):
    """In-memory tool that records calls and returns scripted results.

    Args:
        name: Tool name to register under
        results: Results returned in order; the last one repeats
        error: Exception raised from execute instead of returning
    """

    parameters = {"type": "object", "properties": {}}

    def __init__(
        self,
        name: str,
        results: list[ToolResult] | None = None,
        error: Exception | None = None,
    ) -> None:
        super().__init__(working_directory=".")
        self.name = name
        self.description = f"Fake {name} tool"
        self.results = list(results) if results else [ToolResult(success=True, output="ok")]
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def execute(self, args: dict[str, Any]) -> ToolResult:
        self.calls.append(args)
        if self.error is not None:
            raise self.error
        return await self._run(args)

    async def _run(self, args: dict[str, Any]) -> ToolResult:
        index = min(len(self.calls) - 1, len(self.results) - 1)
        return self.results[index]


def fake_tools(*names: str) -> dict[str, FakeTool]:
    """Build a name -> FakeTool mapping (defaults to the three local tools)."""
    return {name: FakeTool(name) for name in names or ("bash", "text_editor", "search")}


# ---------------------------------------------------------------------------
# RoutingMockLLMClient
# ---------------------------------------------------------------------------


class RoutingMockLLMClient(MockLLMClient):
    """Mock LLM that routes responses by task description for parallel tests.

    Parallel workers share one client and asyncio interleaving makes call
    order non-deterministic, so responses are keyed by the first line of the
    task prompt (``"Task: <description>"``) found in the messages.

    Args:
        response_map: Dict mapping task description -> list of LLMResponses.
            Use ``"default"`` for tasks without an entry; once a list is
            exhausted its last response repeats.
    """

    def __init__(
        self,
        response_map: dict[str, list[LLMResponse]],
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._response_map: dict[str, list[LLMResponse]] = {
            k: list(v) for k, v in response_map.items()
        }
        self._indexes: dict[str, int] = defaultdict(int)

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        description = self._task_description(messages)
        self.call_history.append({
            "agent_id": agent_id,
            "messages": list(messages),
            "description": description,
        })
        key = description if description in self._response_map else "default"
        responses = self._response_map[key]
        index = self._indexes[key]
        self._indexes[key] = index + 1
        return responses[min(index, len(responses) - 1)]

    @staticmethod
    def _task_description(messages: list[dict[str, Any]]) -> str:
        for message in messages:
            content = message.get("content") or ""
            if message.get("role") == "user" and content.startswith("Task: "):
                return content[len("Task: "):].split("\n", 1)[0]
        return ""
