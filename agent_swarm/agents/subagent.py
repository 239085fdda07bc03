"""Subagent worker: a role-scoped, round-bounded tool-calling loop.

Each worker holds a private conversation with the LLM and runs it as a small
LangGraph StateGraph:

    START -> reason -> [tools requested -> execute | done -> END]
    execute -> [rounds left -> reason | out of rounds -> END]

1. REASON: Call the LLM with the role's tool definitions
2. EXECUTE: Vet each requested call with the LoopDetector, run it, and feed
   the result back as a ``tool`` message

Cancellation is cooperative: ``abort()`` clears the active flag, which is
polled at the start of every round and before every tool call. The task
timeout is checked at round boundaries.

Events emitted:
- TASK_STARTED / TASK_PROGRESS
- AGENT_TOOL_CALL / AGENT_TOOL_RESULT
- LOOP_DETECTED
- TASK_COMPLETED / TASK_FAILED / TASK_CANCELLED
"""

import hashlib
import json
import time
import uuid
from typing import Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agent_swarm.agents.errors import (
    RoundLimitExceeded,
    SubagentAborted,
    SubagentTimeout,
    ToolArgumentError,
)
from agent_swarm.agents.llm import (
    LLMClient,
    ToolCallData,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)
from agent_swarm.agents.loop_detector import LoopDetector
from agent_swarm.agents.prompts import build_task_prompt, get_subagent_system_prompt
from agent_swarm.agents.tools import BaseTool, ToolResult, create_default_tools
from agent_swarm.agents.types import (
    ChatEntry,
    SubagentConfig,
    SubagentMessage,
    SubagentResult,
    SubagentRole,
    SubagentState,
    SubagentStatus,
    SubagentTask,
    get_default_config,
)
from agent_swarm.config import settings
from agent_swarm.events.bus import EventBus
from agent_swarm.events.types import AgentEvent, EventType

logger = structlog.get_logger()

# Progress is capped below 100 until the task actually completes
RUNNING_PROGRESS_CAP = 90

# Characters of tool output forwarded in AGENT_TOOL_RESULT events
EVENT_OUTPUT_PREVIEW_CHARS = 100
EVENT_ARG_PREVIEW_CHARS = 500

# text_editor sub-commands that create or modify the target path
_CREATING_COMMANDS = frozenset({"create"})
_MODIFYING_COMMANDS = frozenset({"str_replace", "insert"})

_TERMINAL_EVENTS: dict[SubagentState, EventType] = {
    SubagentState.COMPLETED: EventType.TASK_COMPLETED,
    SubagentState.FAILED: EventType.TASK_FAILED,
    SubagentState.CANCELLED: EventType.TASK_CANCELLED,
}


class SubagentGraphState(TypedDict):
    """State flowing through one execute_task graph run.

    The conversation itself lives on the Subagent; the graph state only
    carries round bookkeeping and the calls waiting to be executed.

    Attributes:
        task_id: Id of the task being executed
        round: Rounds (LLM calls) used so far
        max_rounds: Round budget for this task
        start_time: Wall-clock start of the task
        timeout: Wall-clock budget in seconds
        pending_tool_calls: Calls requested by the latest LLM response
        status: Where the loop stands
    """

    task_id: str
    round: int
    max_rounds: int
    start_time: float
    timeout: float
    pending_tool_calls: list[ToolCallData]
    status: Literal["reasoning", "executing", "complete", "round_limit"]


def _summarize_args_for_event(args: dict[str, Any]) -> dict[str, Any]:
    """Keep event payloads small when tools receive large file contents."""
    summarized: dict[str, Any] = {}
    for key, value in args.items():
        if isinstance(value, str) and len(value) > EVENT_ARG_PREVIEW_CHARS:
            summarized[key] = f"{value[:EVENT_ARG_PREVIEW_CHARS]}... ({len(value)} chars)"
        else:
            summarized[key] = value
    return summarized


class Subagent:
    """An isolated worker that executes one task at a time.

    The worker owns its conversation, its tool set (restricted to the role's
    ``allowed_tools``) and its LoopDetector. All per-task state is reset at
    the start of every ``execute_task`` call.

    Usage:
        >>> worker = Subagent(SubagentRole.TESTING, llm_client=client, event_bus=bus)
        >>> result = await worker.execute_task(task)
        >>> result.status.state
        <SubagentState.COMPLETED: 'completed'>

    Attributes:
        id: Unique worker id
        role: The worker's specialization
        config: Effective, immutable configuration
        tools: Tools bound to this worker, by name
        is_active: Cleared by abort(); polled during execution
        current_task_id: Id of the task in progress, if any
        status: Status of the current (or last) task
    """

    def __init__(
        self,
        role: SubagentRole = SubagentRole.GENERAL,
        config: SubagentConfig | None = None,
        llm_client: LLMClient | None = None,
        event_bus: EventBus | None = None,
        session_id: str | None = None,
        tools: dict[str, BaseTool] | None = None,
        working_directory: str | None = None,
        loop_detector: LoopDetector | None = None,
        subagent_id: str | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            role: Worker role; ignored when ``config`` is given
            config: Explicit configuration (defaults to the role's defaults)
            llm_client: LLM client for model calls (creates default if None)
            event_bus: Event bus for lifecycle events (no events if None)
            session_id: Session the events are published under
            tools: Available tools by name (defaults to the local tools);
                only those named in ``allowed_tools`` are bound
            working_directory: Root for the default local tools
            loop_detector: Detector instance (creates one if None)
            subagent_id: Explicit worker id
        """
        self.config = config or get_default_config(role)
        self.role = self.config.role
        self.id = subagent_id or f"subagent_{self.role.value}_{uuid.uuid4().hex[:8]}"
        self.event_bus = event_bus
        self.session_id = session_id or self.id
        self.llm_client = llm_client or LLMClient(event_bus=event_bus)
        self.loop_detector = loop_detector or LoopDetector()

        available = tools if tools is not None else create_default_tools(working_directory)
        self.tools: dict[str, BaseTool] = {
            name: available[name] for name in self.config.allowed_tools if name in available
        }

        self.is_active = False
        self.current_task_id: str | None = None
        self.status = SubagentStatus(id=self.id, task_id="", role=self.role)

        self._system_prompt = get_subagent_system_prompt(self.config)
        self._messages: list[dict[str, Any]] = [
            {"role": "system", "content": self._system_prompt}
        ]
        self._chat_history: list[ChatEntry] = []
        self._args_cache: dict[tuple[str, str], dict[str, Any]] = {}
        # (task id current when queued, message); None means the worker was idle
        self._inbox: list[tuple[str | None, SubagentMessage]] = []
        self._aborted = False

        # Per-task accumulators
        self._output_parts: list[str] = []
        self._files_created: list[str] = []
        self._files_modified: list[str] = []
        self._tool_calls: list[ToolCallData] = []

        self._compiled_graph = self._build_graph()

    @property
    def is_aborted(self) -> bool:
        """True once abort() has been called. Aborted workers stay aborted."""
        return self._aborted

    def _build_graph(self) -> StateGraph:
        """Build and compile the reason/execute StateGraph."""
        graph = StateGraph(SubagentGraphState)

        graph.add_node("reason", self._reason)
        graph.add_node("execute", self._execute_tools)

        graph.add_edge(START, "reason")
        graph.add_conditional_edges(
            "reason",
            self._after_reason,
            {
                "execute": "execute",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "execute",
            self._after_execute,
            {
                "continue": "reason",
                "end": END,
            },
        )

        return graph.compile()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute_task(self, task: SubagentTask) -> SubagentResult:
        """Run one task to a terminal state.

        Never raises for task-level failures: round exhaustion, timeouts,
        LLM errors and aborts are all captured in the returned result.

        Args:
            task: The task to execute

        Returns:
            Exactly one SubagentResult for this call
        """
        start_time = time.time()
        self._reset_task_state(task)

        if self._aborted:
            self.status.state = SubagentState.CANCELLED
            self.status.error = str(SubagentAborted())
            self.status.end_time = time.time()
            logger.info("subagent_task_rejected_aborted", subagent_id=self.id, task_id=task.id)
            result = self._build_result(task, start_time)
            await self._publish_terminal_event(result)
            return result

        max_rounds = task.max_tool_rounds or self.config.max_tool_rounds
        timeout = task.timeout or self.config.timeout or settings.default_task_timeout_seconds

        self.is_active = True
        self.current_task_id = task.id
        self.status.state = SubagentState.RUNNING

        prompt = build_task_prompt(task)
        self._messages.append({"role": "user", "content": prompt})
        self._chat_history.append(ChatEntry(type="user", content=prompt))

        logger.info(
            "subagent_task_started",
            subagent_id=self.id,
            role=self.role.value,
            task_id=task.id,
            max_rounds=max_rounds,
            timeout=timeout,
        )
        await self._publish(
            EventType.TASK_STARTED,
            task.id,
            {"description": task.description, "max_tool_rounds": max_rounds},
        )

        initial_state = SubagentGraphState(
            task_id=task.id,
            round=0,
            max_rounds=max_rounds,
            start_time=start_time,
            timeout=timeout,
            pending_tool_calls=[],
            status="reasoning",
        )

        try:
            final_state = await self._compiled_graph.ainvoke(
                initial_state,
                config={"recursion_limit": 2 * max_rounds + 10},
            )
            self._check_active()
            if final_state["status"] != "complete":
                raise RoundLimitExceeded(max_rounds)

            self.status.state = SubagentState.COMPLETED
            self.status.progress = 100

        except SubagentAborted as e:
            self.status.state = SubagentState.CANCELLED
            self.status.error = str(e)
            logger.info("subagent_task_cancelled", subagent_id=self.id, task_id=task.id)

        except Exception as e:
            self.status.state = SubagentState.FAILED
            self.status.error = str(e) or type(e).__name__
            logger.error(
                "subagent_task_failed",
                subagent_id=self.id,
                task_id=task.id,
                error_type=type(e).__name__,
                error=self.status.error,
                rounds=self.status.tool_rounds_used,
            )

        finally:
            self.is_active = False
            self.current_task_id = None
            self.status.end_time = time.time()

        result = self._build_result(task, start_time)
        logger.info(
            "subagent_task_finished",
            subagent_id=self.id,
            task_id=task.id,
            state=self.status.state.value,
            rounds=self.status.tool_rounds_used,
            execution_time=round(result.execution_time, 3),
        )
        await self._publish_terminal_event(result)
        return result

    def abort(self) -> None:
        """Request cancellation. Idempotent and permanent for this worker."""
        if not self._aborted:
            logger.info("subagent_aborted", subagent_id=self.id, task_id=self.current_task_id)
        self._aborted = True
        self.is_active = False
        self.status.state = SubagentState.CANCELLED

    def terminate(self) -> None:
        """Abort and drop the conversation. The worker cannot be reused."""
        self.abort()
        self._messages = [{"role": "system", "content": self._system_prompt}]
        self._chat_history.clear()
        self._args_cache.clear()
        self._inbox.clear()

    def get_status(self) -> SubagentStatus:
        """Return a copy of the current status."""
        return self.status.snapshot()

    def get_chat_history(self) -> list[ChatEntry]:
        """Return a copy of the display-oriented conversation."""
        return list(self._chat_history)

    def receive_message(self, message: SubagentMessage) -> None:
        """Handle a message from the orchestrator.

        A ``cancellation`` message aborts the worker. Any other message is
        queued and delivered to the model at the start of the next round.
        Messages that arrive during a task are dropped if that task ends
        before they are delivered; messages sent to an idle worker wait for
        its next task.
        """
        logger.debug(
            "subagent_message_received",
            subagent_id=self.id,
            message_type=message.type,
            from_id=message.from_id,
        )
        if message.type == "cancellation":
            self.abort()
            return
        self._inbox.append((self.current_task_id, message))

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    async def _reason(self, state: SubagentGraphState) -> dict[str, Any]:
        """Call the LLM once and record its response.

        Args:
            state: Current graph state

        Returns:
            Dict with the new round count, pending calls and status
        """
        self._check_active()
        self._deliver_inbox()

        round_number = state["round"] + 1
        tool_definitions = [tool.get_tool_definition() for tool in self.tools.values()]

        response = await self.llm_client.call(
            messages=self._window_messages(),
            tools=tool_definitions or None,
            session_id=self.session_id,
            agent_id=self.id,
        )

        self._messages.append(
            format_assistant_message_with_tools(response.content, response.tool_calls)
        )
        if response.content:
            self._output_parts.append(response.content)
            self._chat_history.append(ChatEntry(type="assistant", content=response.content))
        self._tool_calls.extend(response.tool_calls)

        self.status.tool_rounds_used = round_number
        self.status.progress = min(
            RUNNING_PROGRESS_CAP,
            (round_number * RUNNING_PROGRESS_CAP) // state["max_rounds"],
        )
        await self._publish(
            EventType.TASK_PROGRESS,
            state["task_id"],
            {
                "progress": self.status.progress,
                "content": response.content,
                "round": round_number,
            },
        )

        logger.debug(
            "subagent_round_complete",
            subagent_id=self.id,
            task_id=state["task_id"],
            round=round_number,
            tool_calls=len(response.tool_calls),
        )

        if not response.tool_calls:
            return {"round": round_number, "pending_tool_calls": [], "status": "complete"}

        return {
            "round": round_number,
            "pending_tool_calls": list(response.tool_calls),
            "status": "executing",
        }

    async def _execute_tools(self, state: SubagentGraphState) -> dict[str, Any]:
        """Run the pending tool calls strictly in order, then check the timeout.

        Raises:
            SubagentAborted: The worker was aborted between calls
            SubagentTimeout: The round ended past the task's deadline
        """
        for tool_call in state["pending_tool_calls"]:
            self._check_active()
            result = await self._run_tool_call(tool_call, state["task_id"])
            self._messages.append(
                format_tool_result_for_llm(tool_call.id, result.to_llm_content())
            )
            self._chat_history.append(
                ChatEntry(
                    type="tool_result",
                    content=result.to_llm_content(),
                    tool_name=tool_call.name,
                    success=result.success,
                )
            )

        elapsed = time.time() - state["start_time"]
        if elapsed > state["timeout"]:
            raise SubagentTimeout(elapsed, state["timeout"])

        status = "reasoning" if state["round"] < state["max_rounds"] else "round_limit"
        return {"pending_tool_calls": [], "status": status}

    def _after_reason(self, state: SubagentGraphState) -> str:
        return "end" if state["status"] == "complete" else "execute"

    def _after_execute(self, state: SubagentGraphState) -> str:
        if state["status"] == "round_limit":
            logger.warning(
                "subagent_round_limit_reached",
                subagent_id=self.id,
                task_id=state["task_id"],
                max_rounds=state["max_rounds"],
            )
            return "end"
        return "continue"

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _run_tool_call(self, tool_call: ToolCallData, task_id: str) -> ToolResult:
        """Parse, vet, execute and record one tool call.

        Every failure here is confined to this call and returned as a failed
        ToolResult so the model can react to it.
        """
        try:
            args = self._parse_tool_args(tool_call)
        except ToolArgumentError as e:
            logger.warning(
                "tool_arguments_rejected",
                subagent_id=self.id,
                tool=tool_call.name,
                error=str(e),
            )
            return ToolResult(success=False, error=str(e))

        tool = self.tools.get(tool_call.name)
        if tool is None:
            return ToolResult(
                success=False,
                error=f"Tool '{tool_call.name}' not available for {self.role.value} agent",
            )

        check = self.loop_detector.check_for_loop(tool_call.name, args)
        if check.is_loop:
            logger.warning(
                "tool_loop_detected",
                subagent_id=self.id,
                task_id=task_id,
                tool=tool_call.name,
                reason=check.reason,
            )
            await self._publish(
                EventType.LOOP_DETECTED,
                task_id,
                {
                    "tool": tool_call.name,
                    "reason": check.reason,
                    "count": check.count,
                    "threshold": check.threshold,
                },
            )
            self.loop_detector.record_tool_call(tool_call.name, args, success=False)
            return ToolResult(
                success=False,
                error=f"Loop detected: {check.reason}. {check.suggestion}",
            )

        await self._publish(
            EventType.AGENT_TOOL_CALL,
            task_id,
            {
                "tool": tool_call.name,
                "tool_call_id": tool_call.id,
                "args": _summarize_args_for_event(args),
            },
        )

        try:
            result = await tool.execute(args)
        except Exception as e:
            logger.error(
                "tool_execution_error",
                subagent_id=self.id,
                tool=tool_call.name,
                error_type=type(e).__name__,
                error=str(e),
            )
            result = ToolResult(
                success=False,
                error=f"Tool execution error in {tool_call.name}: {e}",
            )

        output_hash = hashlib.sha1(result.output.encode("utf-8")).hexdigest()[:12]
        self.loop_detector.record_tool_call(
            tool_call.name, args, result.success, output_hash=output_hash
        )

        if tool_call.name not in self.status.tools_used:
            self.status.tools_used.append(tool_call.name)
        if result.success:
            self._track_files(tool_call.name, args)

        await self._publish(
            EventType.AGENT_TOOL_RESULT,
            task_id,
            {
                "tool": tool_call.name,
                "tool_call_id": tool_call.id,
                "success": result.success,
                "output": result.to_llm_content()[:EVENT_OUTPUT_PREVIEW_CHARS],
            },
        )
        return result

    def _parse_tool_args(self, tool_call: ToolCallData) -> dict[str, Any]:
        """Strictly parse the model's raw argument string.

        Calls built without a raw string (for example by tests or by a
        provider that already decoded them) use ``args`` as-is.

        Raises:
            ToolArgumentError: Empty, malformed, or non-object arguments
        """
        raw = tool_call.arguments
        if raw is None:
            return dict(tool_call.args)

        cache_key = (tool_call.id, raw)
        cached = self._args_cache.get(cache_key)
        if cached is not None:
            return dict(cached)

        if not raw.strip():
            raise ToolArgumentError(f"Tool '{tool_call.name}' called with empty arguments")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolArgumentError(
                f"Tool '{tool_call.name}' called with invalid JSON arguments: {e.msg}"
            ) from None
        if not isinstance(parsed, dict):
            raise ToolArgumentError(
                f"Tool '{tool_call.name}' arguments must be a JSON object"
            )

        self._args_cache[cache_key] = parsed
        return dict(parsed)

    def _track_files(self, tool_name: str, args: dict[str, Any]) -> None:
        if tool_name != "text_editor":
            return
        path = args.get("path")
        if not isinstance(path, str) or not path:
            return
        command = args.get("command")
        if command in _CREATING_COMMANDS and path not in self._files_created:
            self._files_created.append(path)
        elif command in _MODIFYING_COMMANDS and path not in self._files_modified:
            self._files_modified.append(path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_active(self) -> None:
        if not self.is_active:
            raise SubagentAborted()

    def _reset_task_state(self, task: SubagentTask) -> None:
        """Reset everything that belongs to a single task."""
        self._messages = [{"role": "system", "content": self._system_prompt}]
        self._chat_history = []
        self._args_cache = {}
        # Undelivered messages addressed to an earlier task must not leak
        self._inbox = [(queued_for, m) for queued_for, m in self._inbox if queued_for is None]
        self._output_parts = []
        self._files_created = []
        self._files_modified = []
        self._tool_calls = []
        self.loop_detector.reset()
        self.status = SubagentStatus(id=self.id, task_id=task.id, role=self.role)

    def _deliver_inbox(self) -> None:
        """Turn queued orchestrator messages into user turns."""
        while self._inbox:
            _, message = self._inbox.pop(0)
            content = f"Message from {message.from_id} ({message.type}): {message.content}"
            self._messages.append({"role": "user", "content": content})
            self._chat_history.append(ChatEntry(type="user", content=content))

    def _window_messages(self) -> list[dict[str, Any]]:
        """Messages sent to the LLM, limited to the last ``context_depth`` rounds.

        The system prompt and the task prompt are always kept. Cuts happen
        only at assistant turns so tool results stay paired with their calls.
        """
        head, rest = self._messages[:2], self._messages[2:]
        starts = [index for index, message in enumerate(rest) if message["role"] == "assistant"]
        if len(starts) <= self.config.context_depth:
            return list(self._messages)
        return head + rest[starts[-self.config.context_depth]:]

    def _build_result(self, task: SubagentTask, start_time: float) -> SubagentResult:
        status = self.status.snapshot()
        return SubagentResult(
            id=self.id,
            task_id=task.id,
            role=self.role,
            success=status.state == SubagentState.COMPLETED,
            status=status,
            output="\n\n".join(self._output_parts),
            execution_time=time.time() - start_time,
            files_modified=list(self._files_modified),
            files_created=list(self._files_created),
            tool_calls=list(self._tool_calls),
            error=status.error,
        )

    async def _publish_terminal_event(self, result: SubagentResult) -> None:
        await self._publish(
            _TERMINAL_EVENTS[result.status.state],
            result.task_id,
            {
                "success": result.success,
                "error": result.error,
                "execution_time": result.execution_time,
                "tool_rounds_used": result.status.tool_rounds_used,
            },
        )

    async def _publish(self, event_type: EventType, task_id: str, data: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                session_id=self.session_id,
                agent_id=self.id,
                agent_role=self.role.value,
                task_id=task_id,
                data=data,
            )
        )
