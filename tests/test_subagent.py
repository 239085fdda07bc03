"""End-to-end execution tests for the Subagent worker graph.

These tests compile the real LangGraph and run ``execute_task()`` with a
``MockLLMClient`` and in-memory fake tools, verifying state transitions,
tool scoping, loop interventions, cancellation, and emitted events.
"""

from __future__ import annotations

import asyncio
from typing import Any

from agent_swarm.agents.loop_detector import LoopDetector
from agent_swarm.agents.subagent import Subagent
from agent_swarm.agents.tools import ToolResult
from agent_swarm.agents.types import (
    ChatEntry,
    SubagentMessage,
    SubagentRole,
    SubagentState,
    TaskContext,
    get_default_config,
)
from agent_swarm.events.bus import EventBus
from agent_swarm.events.types import EventType
from tests.conftest import (
    FakeTool,
    MockLLMClient,
    collect_events,
    fake_tools,
    make_llm_response,
    make_task,
    make_tool_call,
)

SESSION_ID = "sess_subagent_test"


def _make_worker(
    llm: MockLLMClient,
    event_bus: EventBus | None = None,
    role: SubagentRole = SubagentRole.GENERAL,
    tools: dict[str, FakeTool] | None = None,
    **overrides: Any,
) -> Subagent:
    """Build a worker backed by a mock LLM and fake tools."""
    return Subagent(
        config=get_default_config(role, **overrides),
        llm_client=llm,
        event_bus=event_bus,
        session_id=SESSION_ID,
        tools=tools if tools is not None else fake_tools(),
        loop_detector=LoopDetector(enabled=True),
    )


class _AbortingTool(FakeTool):
    """Aborts its worker right after running."""

    worker: Subagent | None = None

    async def execute(self, args: dict[str, Any]) -> ToolResult:
        result = await super().execute(args)
        assert self.worker is not None
        self.worker.abort()
        return result


class _MessagingTool(FakeTool):
    """Sends its worker a status message while the task is running."""

    worker: Subagent | None = None

    async def execute(self, args: dict[str, Any]) -> ToolResult:
        assert self.worker is not None
        self.worker.receive_message(SubagentMessage(
            from_id="orchestrator", to_id=self.worker.id, content="Only for the first task",
        ))
        return await super().execute(args)


class _SlowTool(FakeTool):
    async def execute(self, args: dict[str, Any]) -> ToolResult:
        await asyncio.sleep(0.05)
        return await super().execute(args)


# =========================================================================
# Happy path
# =========================================================================


class TestSubagentExecution:
    """Compile the graph and run tasks end-to-end."""

    async def test_tool_round_then_completion(self, event_bus: EventBus) -> None:
        tools = fake_tools()
        llm = MockLLMClient(responses=[
            make_llm_response(
                content="Creating the module.",
                tool_calls=[
                    make_tool_call(
                        "text_editor",
                        {"command": "create", "path": "src/app.py", "file_text": "x = 1"},
                        call_id="tc_create",
                    )
                ],
            ),
            make_llm_response(content="Done."),
        ])
        worker = _make_worker(llm, event_bus, tools=tools)

        result = await worker.execute_task(make_task("build", description="Build the app"))

        assert result.success is True
        assert result.error is None
        assert result.status.state == SubagentState.COMPLETED
        assert result.status.progress == 100
        assert result.status.tool_rounds_used == 2
        assert result.status.tools_used == ["text_editor"]
        assert result.output == "Creating the module.\n\nDone."
        assert result.files_created == ["src/app.py"]
        assert result.files_modified == []
        assert [tc.id for tc in result.tool_calls] == ["tc_create"]
        assert result.status.end_time is not None
        assert tools["text_editor"].calls == [
            {"command": "create", "path": "src/app.py", "file_text": "x = 1"}
        ]
        assert worker.is_active is False
        assert worker.current_task_id is None

        events = await collect_events(event_bus, SESSION_ID)
        assert [e.type for e in events] == [
            EventType.TASK_STARTED,
            EventType.TASK_PROGRESS,
            EventType.AGENT_TOOL_CALL,
            EventType.AGENT_TOOL_RESULT,
            EventType.TASK_PROGRESS,
            EventType.TASK_COMPLETED,
        ]
        assert all(e.task_id == "build" and e.agent_id == worker.id for e in events)
        assert events[1].data["progress"] == 3  # 1 of 30 rounds
        assert events[3].data["success"] is True

    async def test_first_messages_are_system_and_task(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="ok")])
        worker = _make_worker(llm)

        await worker.execute_task(make_task("t1", description="Write docs"))

        messages = llm.call_history[0]["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert messages[1]["content"].startswith("Task: Write docs")
        tool_names = [t["function"]["name"] for t in llm.call_history[0]["tools"]]
        assert tool_names == ["bash", "text_editor", "search"]

    async def test_modified_files_tracked_once_and_only_on_success(self) -> None:
        editor = FakeTool("text_editor", results=[
            ToolResult(success=True, output="Edited"),
            ToolResult(success=True, output="Edited"),
            ToolResult(success=False, error="old_str not found"),
        ])
        edit = {"command": "str_replace", "path": "a.py", "old_str": "x", "new_str": "y"}
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[
                make_tool_call("text_editor", edit, call_id="tc_1"),
                make_tool_call("text_editor", {**edit, "old_str": "z"}, call_id="tc_2"),
                make_tool_call(
                    "text_editor",
                    {"command": "insert", "path": "b.py", "insert_line": 0, "new_str": "q"},
                    call_id="tc_3",
                ),
            ]),
            make_llm_response(content="done"),
        ])
        worker = _make_worker(llm, tools={"text_editor": editor})

        result = await worker.execute_task(make_task("edit"))

        assert result.success is True
        assert result.files_modified == ["a.py"]

    async def test_raw_json_arguments_are_parsed(self) -> None:
        tools = fake_tools()
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[
                make_tool_call("bash", arguments='{"command": "ls"}'),
            ]),
            make_llm_response(content="done"),
        ])
        worker = _make_worker(llm, tools=tools)

        await worker.execute_task(make_task("list"))

        assert tools["bash"].calls == [{"command": "ls"}]

    async def test_parsed_arguments_cached_per_call(self) -> None:
        tools = fake_tools()
        raw = '{"command": "ls"}'
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[
                make_tool_call("bash", arguments=raw, call_id="tc_1"),
                make_tool_call("bash", arguments=raw, call_id="tc_2"),
            ]),
            make_llm_response(content="done"),
        ])
        worker = _make_worker(llm, tools=tools)

        await worker.execute_task(make_task("list"))

        assert tools["bash"].calls == [{"command": "ls"}, {"command": "ls"}]
        assert set(worker._args_cache) == {("tc_1", raw), ("tc_2", raw)}

    async def test_state_is_reset_between_tasks(self) -> None:
        llm = MockLLMClient(responses=[
            make_llm_response(
                content="first",
                tool_calls=[make_tool_call("bash", {"command": "ls"})],
            ),
            make_llm_response(content="first done"),
            make_llm_response(content="second done"),
        ])
        worker = _make_worker(llm)

        first = await worker.execute_task(make_task("one", description="First task"))
        second = await worker.execute_task(make_task("two", description="Second task"))

        assert first.success and second.success
        assert second.output == "second done"
        assert second.tool_calls == []
        messages = llm.call_history[2]["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert messages[1]["content"].startswith("Task: Second task")
        assert [e.type for e in worker.get_chat_history()] == ["user", "assistant"]
        assert worker.loop_detector.get_stats()["history_size"] == 0

    async def test_context_window_keeps_recent_rounds(self) -> None:
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", {"command": "a"}, "tc_a")]),
            make_llm_response(tool_calls=[make_tool_call("bash", {"command": "b"}, "tc_b")]),
            make_llm_response(content="done"),
        ])
        worker = _make_worker(llm, context_depth=1)

        result = await worker.execute_task(make_task("window"))

        assert result.success is True
        messages = llm.call_history[2]["messages"]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool"]
        assert messages[3]["tool_call_id"] == "tc_b"


# =========================================================================
# Failure modes
# =========================================================================


class TestSubagentFailures:
    """Round limits, timeouts, and LLM errors end FAILED."""

    async def test_round_limit_fails_task(self, event_bus: EventBus) -> None:
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", {"command": "ls"})]),
        ])
        worker = _make_worker(llm, event_bus)

        result = await worker.execute_task(make_task("limited", max_tool_rounds=1))

        assert result.success is False
        assert result.status.state == SubagentState.FAILED
        assert result.error == "Tool round limit (1) reached before task completion"
        assert len(llm.call_history) == 1
        assert result.status.progress == 90

        events = await collect_events(event_bus, SESSION_ID)
        assert events[-1].type == EventType.TASK_FAILED
        assert events[-1].data["error"] == result.error

    async def test_timeout_checked_after_round(self) -> None:
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", {"command": "sleep"})]),
            make_llm_response(content="never reached"),
        ])
        worker = _make_worker(llm, tools={"bash": _SlowTool("bash")})

        result = await worker.execute_task(make_task("slow", timeout=0.01))

        assert result.status.state == SubagentState.FAILED
        assert result.error is not None
        assert result.error.startswith("Task timeout after")
        assert len(llm.call_history) == 1

    async def test_llm_error_is_captured(self) -> None:
        llm = MockLLMClient(responses=[])
        worker = _make_worker(llm)

        result = await worker.execute_task(make_task("broken"))

        assert result.success is False
        assert result.status.state == SubagentState.FAILED
        assert result.error == "No more mock responses available"


# =========================================================================
# Tool scoping and argument handling
# =========================================================================


class TestToolScoping:
    """Per-call failures are fed back to the model, not raised."""

    @staticmethod
    def _last_tool_message(llm: MockLLMClient) -> dict[str, Any]:
        return llm.call_history[1]["messages"][-1]

    async def test_unknown_tool(self) -> None:
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("deploy", {"env": "prod"})]),
            make_llm_response(content="ok"),
        ])
        worker = _make_worker(llm)

        result = await worker.execute_task(make_task("t"))

        assert result.success is True
        message = self._last_tool_message(llm)
        assert message["role"] == "tool"
        assert message["content"] == "Tool 'deploy' not available for general agent"

    async def test_role_restricts_tools(self) -> None:
        tools = fake_tools()
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[
                make_tool_call("text_editor", {"command": "view", "path": "a.py"}),
            ]),
            make_llm_response(content="ok"),
        ])
        worker = _make_worker(llm, role=SubagentRole.ANALYSIS, tools=tools)

        await worker.execute_task(make_task("audit"))

        assert sorted(worker.tools) == ["bash", "search"]
        assert tools["text_editor"].calls == []
        message = self._last_tool_message(llm)
        assert message["content"] == "Tool 'text_editor' not available for analysis agent"

    async def test_empty_arguments(self) -> None:
        tools = fake_tools()
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", arguments="  ")]),
            make_llm_response(content="ok"),
        ])
        worker = _make_worker(llm, tools=tools)

        await worker.execute_task(make_task("t"))

        assert tools["bash"].calls == []
        message = self._last_tool_message(llm)
        assert message["content"] == "Tool 'bash' called with empty arguments"

    async def test_invalid_json_arguments(self) -> None:
        tools = fake_tools()
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", arguments="{not json")]),
            make_llm_response(content="ok"),
        ])
        worker = _make_worker(llm, tools=tools)

        await worker.execute_task(make_task("t"))

        assert tools["bash"].calls == []
        message = self._last_tool_message(llm)
        assert "invalid JSON arguments" in message["content"]

    async def test_non_object_arguments(self) -> None:
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", arguments="[1, 2]")]),
            make_llm_response(content="ok"),
        ])
        worker = _make_worker(llm)

        await worker.execute_task(make_task("t"))

        message = self._last_tool_message(llm)
        assert message["content"] == "Tool 'bash' arguments must be a JSON object"

    async def test_tool_exception(self) -> None:
        tools = {"bash": FakeTool("bash", error=RuntimeError("disk full"))}
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", {"command": "df"})]),
            make_llm_response(content="ok"),
        ])
        worker = _make_worker(llm, tools=tools)

        result = await worker.execute_task(make_task("t"))

        assert result.success is True
        message = self._last_tool_message(llm)
        assert message["content"] == "Tool execution error in bash: disk full"

    async def test_failed_tool_output_includes_error(self) -> None:
        tools = {"bash": FakeTool("bash", results=[
            ToolResult(success=False, output="1 failed", error="Command exited with code 1"),
        ])}
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", {"command": "pytest"})]),
            make_llm_response(content="ok"),
        ])
        worker = _make_worker(llm, tools=tools)

        await worker.execute_task(make_task("t"))

        message = self._last_tool_message(llm)
        assert message["content"] == "Command exited with code 1\n1 failed"


# =========================================================================
# Loop safety
# =========================================================================


class TestLoopIntervention:
    async def test_ninth_identical_command_is_blocked(self, event_bus: EventBus) -> None:
        tools = fake_tools()
        responses = [
            make_llm_response(tool_calls=[
                make_tool_call("bash", {"command": "npm test"}, call_id=f"tc_{i}"),
            ])
            for i in range(9)
        ]
        responses.append(make_llm_response(content="giving up"))
        llm = MockLLMClient(responses=responses)
        worker = _make_worker(llm, event_bus, tools=tools)

        result = await worker.execute_task(make_task("loop"))

        assert result.success is True
        assert len(tools["bash"].calls) == 8
        blocked = llm.call_history[9]["messages"][-1]
        assert blocked["tool_call_id"] == "tc_8"
        assert blocked["content"].startswith(
            'Loop detected: Tool "bash" called 9 times with same signature (threshold: 8).'
        )

        events = await collect_events(event_bus, SESSION_ID)
        loops = [e for e in events if e.type == EventType.LOOP_DETECTED]
        assert len(loops) == 1
        assert loops[0].data["tool"] == "bash"
        assert loops[0].data["count"] == 9


# =========================================================================
# Cancellation and messaging
# =========================================================================


class TestCancellation:
    async def test_abort_before_dispatch(self, event_bus: EventBus) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="never")])
        worker = _make_worker(llm, event_bus)

        worker.abort()
        result = await worker.execute_task(make_task("t"))

        assert result.success is False
        assert result.status.state == SubagentState.CANCELLED
        assert result.error == "Task was aborted"
        assert llm.call_history == []

        events = await collect_events(event_bus, SESSION_ID)
        assert [e.type for e in events] == [EventType.TASK_CANCELLED]

    async def test_abort_is_idempotent_and_sticky(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="never")])
        worker = _make_worker(llm)

        worker.abort()
        worker.abort()
        first = await worker.execute_task(make_task("a"))
        second = await worker.execute_task(make_task("b"))

        assert first.status.state == SubagentState.CANCELLED
        assert second.status.state == SubagentState.CANCELLED
        assert worker.is_aborted is True
        assert llm.call_history == []

    async def test_abort_between_tool_calls(self) -> None:
        aborting = _AbortingTool("bash")
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[
                make_tool_call("bash", {"command": "one"}, call_id="tc_1"),
                make_tool_call("bash", {"command": "two"}, call_id="tc_2"),
            ]),
            make_llm_response(content="never"),
        ])
        worker = _make_worker(llm, tools={"bash": aborting})
        aborting.worker = worker

        result = await worker.execute_task(make_task("t"))

        assert result.status.state == SubagentState.CANCELLED
        assert aborting.calls == [{"command": "one"}]
        assert len(llm.call_history) == 1
        assert worker.is_active is False

    async def test_cancellation_message_aborts(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="never")])
        worker = _make_worker(llm)

        worker.receive_message(SubagentMessage(
            from_id="orchestrator", to_id=worker.id, content="stop", type="cancellation",
        ))
        result = await worker.execute_task(make_task("t"))

        assert result.status.state == SubagentState.CANCELLED
        assert llm.call_history == []

    async def test_status_message_delivered_next_round(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="ok")])
        worker = _make_worker(llm)

        worker.receive_message(SubagentMessage(
            from_id="orchestrator", to_id=worker.id, content="Focus on the API",
        ))
        await worker.execute_task(make_task("t"))

        last = llm.call_history[0]["messages"][-1]
        assert last == {
            "role": "user",
            "content": "Message from orchestrator (status): Focus on the API",
        }

    async def test_undelivered_message_does_not_reach_next_task(self) -> None:
        messenger = _MessagingTool("bash")
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", {"command": "ls"})]),
            make_llm_response(content="second done"),
        ])
        worker = _make_worker(llm, tools={"bash": messenger}, max_tool_rounds=1)
        messenger.worker = worker

        first = await worker.execute_task(make_task("one"))
        second = await worker.execute_task(make_task("two"))

        assert first.status.state == SubagentState.FAILED
        assert second.success is True
        contents = [m["content"] for m in llm.call_history[1]["messages"]]
        assert not any("Only for the first task" in (c or "") for c in contents)
        assert [m["role"] for m in llm.call_history[1]["messages"]] == ["system", "user"]

    async def test_message_to_idle_worker_waits_for_next_task(self) -> None:
        llm = MockLLMClient(responses=[
            make_llm_response(content="first done"),
            make_llm_response(content="second done"),
        ])
        worker = _make_worker(llm)
        await worker.execute_task(make_task("one"))

        worker.receive_message(SubagentMessage(
            from_id="orchestrator", to_id=worker.id, content="Use the new schema",
        ))
        await worker.execute_task(make_task("two"))

        assert llm.call_history[1]["messages"][-1]["content"] == (
            "Message from orchestrator (status): Use the new schema"
        )

    async def test_terminate_clears_conversation(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="ok")])
        worker = _make_worker(llm)
        await worker.execute_task(make_task("t"))

        worker.terminate()

        assert worker.get_chat_history() == []
        assert worker.is_aborted is True


class TestStatusSnapshots:
    async def test_get_status_returns_copy(self) -> None:
        llm = MockLLMClient(responses=[
            make_llm_response(tool_calls=[make_tool_call("bash", {"command": "ls"})]),
            make_llm_response(content="ok"),
        ])
        worker = _make_worker(llm)
        await worker.execute_task(make_task("t"))

        status = worker.get_status()
        status.tools_used.append("tampered")
        status.progress = 0

        assert worker.get_status().tools_used == ["bash"]
        assert worker.get_status().progress == 100

    async def test_get_chat_history_returns_copy(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="ok")])
        worker = _make_worker(llm)
        await worker.execute_task(make_task("t"))

        history = worker.get_chat_history()
        history.append(ChatEntry(type="user", content="injected"))

        assert len(worker.get_chat_history()) == 2

    async def test_context_in_task_prompt(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="ok")])
        worker = _make_worker(llm)
        context = TaskContext(working_directory="/srv/app", files=("main.py",))

        await worker.execute_task(make_task("t", description="Ship it", context=context))

        prompt = llm.call_history[0]["messages"][1]["content"]
        assert "- Working Directory: /srv/app" in prompt
        assert "- Relevant Files: main.py" in prompt
