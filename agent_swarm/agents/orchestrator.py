"""Subagent orchestration: dependency-aware dispatch over a bounded worker pool.

The orchestrator resolves the task graph up front (graph errors abort the
run), then feeds tasks to Subagent workers:

- continuous (default): a task starts as soon as its own dependencies have
  completed successfully
- batch: every task of batch k reaches a terminal state before batch k+1
  starts

In both modes an asyncio.Semaphore bounds how many workers run at once.
When a task does not complete, its transitive dependents are never
dispatched; they are reported as skipped results instead.

Events emitted:
- RUN_STARTED / RUN_COMPLETE
- TASK_SKIPPED
- SUBAGENT_SPAWNED / SUBAGENT_TERMINATED / SUBAGENT_MESSAGE
- TASKS_QUEUED / QUEUE_CLEARED
"""

import asyncio
import re
import time
import uuid
from collections.abc import Iterable, Sequence
from typing import Any

import structlog

from agent_swarm.agents.dependency_resolver import DependencyResolver
from agent_swarm.agents.errors import AgentLimitExceeded, SubagentNotFound
from agent_swarm.agents.llm import LLMClient
from agent_swarm.agents.subagent import Subagent
from agent_swarm.agents.tools import BaseTool
from agent_swarm.agents.types import (
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

# Checked in order; the first match wins
ROLE_PATTERNS: list[tuple[SubagentRole, re.Pattern[str]]] = [
    (
        SubagentRole.TESTING,
        re.compile(r"\b(?:tests?|testing|unit[- ]tests?|coverage)\b", re.IGNORECASE),
    ),
    (
        SubagentRole.DOCUMENTATION,
        re.compile(r"\b(?:document\w*|docs?|readme|docstrings?)\b", re.IGNORECASE),
    ),
    (
        SubagentRole.REFACTORING,
        re.compile(r"\b(?:refactor\w*|restructure|clean\s*up|reorganize)\b", re.IGNORECASE),
    ),
    (
        SubagentRole.ANALYSIS,
        re.compile(r"\b(?:analy[sz]e|analysis|review|audit)\b", re.IGNORECASE),
    ),
    (
        SubagentRole.DEBUG,
        re.compile(r"\b(?:debug\w*|fix\w*|bugs?)\b", re.IGNORECASE),
    ),
    (
        SubagentRole.PERFORMANCE,
        re.compile(r"\b(?:performance|optimi[sz]e\w*|speed\s*up)\b", re.IGNORECASE),
    ),
]


def infer_role(description: str) -> SubagentRole:
    """Pick a role from keywords in a task description (GENERAL if none match)."""
    for role, pattern in ROLE_PATTERNS:
        if pattern.search(description):
            return role
    return SubagentRole.GENERAL


class SubagentOrchestrator:
    """Runs interdependent tasks on a pool of role-specialized workers.

    Workers are owned by the orchestrator. An idle worker of the right role
    is reused for the next task; callers never abort workers directly but go
    through ``cancel()`` or ``send_message(..., "cancellation")``.

    Usage:
        >>> orchestrator = SubagentOrchestrator(llm_client=client, event_bus=bus)
        >>> results = await orchestrator.execute_tasks(tasks)
        >>> [r.task_id for r in results if r.skipped]
        ['deploy']

    Attributes:
        session_id: Session every event of this orchestrator is published under
        max_concurrent_agents: Upper bound on live workers
        scheduling_mode: "continuous" or "batch"
    """

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        event_bus: EventBus | None = None,
        session_id: str | None = None,
        max_concurrent_agents: int | None = None,
        scheduling_mode: str | None = None,
        resolver: DependencyResolver | None = None,
        tools: dict[str, BaseTool] | None = None,
        working_directory: str | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            llm_client: Shared LLM client for all workers (creates default if None)
            event_bus: Event bus for lifecycle events (creates one if None)
            session_id: Session id for events (generated if None)
            max_concurrent_agents: Worker limit (defaults to settings)
            scheduling_mode: "continuous" or "batch" (defaults to settings)
            resolver: Dependency resolver (creates one if None)
            tools: Tool instances shared by all workers (local tools if None)
            working_directory: Root for the default local tools
        """
        self.event_bus = event_bus or EventBus()
        self.llm_client = llm_client or LLMClient(event_bus=self.event_bus)
        self.session_id = session_id or f"swarm_{uuid.uuid4().hex[:12]}"
        self.id = f"orchestrator_{self.session_id}"
        self.max_concurrent_agents = max_concurrent_agents or settings.max_concurrent_agents
        self.scheduling_mode = (scheduling_mode or settings.scheduling_mode).lower()
        if self.scheduling_mode not in ("continuous", "batch"):
            raise ValueError(f"Unknown scheduling mode: {self.scheduling_mode}")
        self.resolver = resolver or DependencyResolver()
        self.tools = tools
        self.working_directory = working_directory

        self._subagents: dict[str, Subagent] = {}
        self._busy: set[str] = set()
        self._results: dict[str, SubagentResult] = {}
        self._queue: list[SubagentTask] = []
        self._semaphore = asyncio.Semaphore(self.max_concurrent_agents)
        self._cancelled = False

    # ------------------------------------------------------------------
    # Running tasks
    # ------------------------------------------------------------------

    async def execute_tasks(self, tasks: Sequence[SubagentTask]) -> list[SubagentResult]:
        """Execute a task set and return one result per task.

        Args:
            tasks: The task set; dependencies must refer to ids in the set

        Returns:
            Results in topological order, skipped dependents included

        Raises:
            DependencyError: The task graph is invalid (dangling reference,
                duplicate id, or cycle); nothing is dispatched
        """
        if not tasks:
            return []

        batches = self.resolver.resolve_dependencies(tasks)
        order = [task_id for batch in batches for task_id in batch]
        task_map = {task.id: task for task in tasks}
        self._cancelled = False

        logger.info(
            "orchestrator_run_started",
            session_id=self.session_id,
            task_count=len(tasks),
            batch_count=len(batches),
            scheduling_mode=self.scheduling_mode,
        )
        await self._publish(
            EventType.RUN_STARTED,
            data={
                "task_count": len(tasks),
                "batches": batches,
                "scheduling_mode": self.scheduling_mode,
            },
        )

        results: dict[str, SubagentResult] = {}
        if self.scheduling_mode == "batch":
            await self._run_batches(batches, task_map, results)
        else:
            await self._run_continuous(task_map, results)

        ordered = [results[task_id] for task_id in order]
        self._results.update(results)

        # Aborted workers are never reused
        for worker in [w for w in self._subagents.values() if w.is_aborted]:
            await self.terminate_subagent(worker.id)

        summary = {
            "succeeded": sum(1 for r in ordered if r.success),
            "failed": sum(1 for r in ordered if not r.success and not r.skipped),
            "skipped": sum(1 for r in ordered if r.skipped),
        }
        logger.info("orchestrator_run_complete", session_id=self.session_id, **summary)
        await self._publish(EventType.RUN_COMPLETE, data=summary)
        return ordered

    async def delegate_task(
        self,
        task: SubagentTask,
        role: SubagentRole | None = None,
    ) -> SubagentResult:
        """Run a single task on a fresh worker, then terminate that worker.

        Raises:
            AgentLimitExceeded: No worker slot is free
        """
        worker = await self.spawn(role or task.role or infer_role(task.description))
        try:
            result = await worker.execute_task(task)
        finally:
            await self.terminate_subagent(worker.id)

        self._results[task.id] = result
        return result

    async def _run_continuous(
        self,
        task_map: dict[str, SubagentTask],
        results: dict[str, SubagentResult],
    ) -> None:
        """Start each task as soon as its dependencies have completed."""
        pending = dict(task_map)
        completed: set[str] = set()
        running: dict[asyncio.Task[None], str] = {}

        try:
            while pending or running:
                await self._skip_blocked(pending, results)

                for task in self.resolver.get_ready_tasks(list(pending.values()), completed):
                    del pending[task.id]
                    running[asyncio.create_task(self._run_task(task, results))] = task.id

                if not running:
                    break

                done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    task_id = running.pop(finished)
                    finished.result()
                    if results[task_id].success:
                        completed.add(task_id)
        finally:
            await self._reap(running)

    async def _run_batches(
        self,
        batches: list[list[str]],
        task_map: dict[str, SubagentTask],
        results: dict[str, SubagentResult],
    ) -> None:
        """Run batch k to completion before starting batch k+1."""
        for level, batch in enumerate(batches):
            pending = {task_id: task_map[task_id] for task_id in batch}
            await self._skip_blocked(pending, results)

            logger.debug(
                "orchestrator_batch_dispatch",
                session_id=self.session_id,
                level=level,
                task_ids=list(pending),
            )
            children = [
                asyncio.create_task(self._run_task(task, results)) for task in pending.values()
            ]
            try:
                await asyncio.gather(*children)
            finally:
                await self._reap(children)

    async def _reap(self, children: Iterable[asyncio.Task[None]]) -> None:
        """Cancel unfinished worker tasks and wait until they have unwound."""
        unfinished = [child for child in children if not child.done()]
        if not unfinished:
            return
        logger.warning(
            "orchestrator_run_abandoned",
            session_id=self.session_id,
            cancelled_tasks=len(unfinished),
        )
        for child in unfinished:
            child.cancel()
        await asyncio.gather(*unfinished, return_exceptions=True)

    async def _skip_blocked(
        self,
        pending: dict[str, SubagentTask],
        results: dict[str, SubagentResult],
    ) -> None:
        """Move pending tasks with an unsuccessful dependency to skipped.

        Repeats until nothing changes, so skips cascade to every transitive
        dependent within ``pending``.
        """
        changed = True
        while changed:
            changed = False
            for task_id, task in list(pending.items()):
                blocker = next(
                    (
                        dep for dep in task.dependencies
                        if dep in results and not results[dep].success
                    ),
                    None,
                )
                if blocker is None:
                    continue
                del pending[task_id]
                results[task_id] = await self._skip_task(task, blocker)
                changed = True

    async def _run_task(self, task: SubagentTask, results: dict[str, SubagentResult]) -> None:
        """Run one task on a pooled worker, never raising for task failures."""
        role = task.role or infer_role(task.description)

        async with self._semaphore:
            if self._cancelled:
                results[task.id] = self._synthetic_result(
                    task, role, SubagentState.CANCELLED, "Run was cancelled"
                )
                return

            try:
                worker = await self._acquire_worker(role)
            except AgentLimitExceeded as e:
                logger.error("orchestrator_worker_unavailable", task_id=task.id, error=str(e))
                results[task.id] = self._synthetic_result(task, role, SubagentState.FAILED, str(e))
                return

            try:
                results[task.id] = await worker.execute_task(task)
            except Exception as e:
                logger.error(
                    "orchestrator_worker_crashed",
                    subagent_id=worker.id,
                    task_id=task.id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                results[task.id] = self._synthetic_result(
                    task, role, SubagentState.FAILED, str(e) or type(e).__name__, worker.id
                )
            finally:
                self._busy.discard(worker.id)

    async def _acquire_worker(self, role: SubagentRole) -> Subagent:
        """Reserve an idle worker of ``role``, spawning one if needed.

        When the pool is full, an idle worker of another role is retired to
        make room.

        Raises:
            AgentLimitExceeded: Every worker slot is busy
        """
        for worker in self._subagents.values():
            if (
                worker.role == role
                and worker.id not in self._busy
                and not worker.is_active
                and not worker.is_aborted
            ):
                self._busy.add(worker.id)
                logger.debug("orchestrator_worker_reused", subagent_id=worker.id, role=role.value)
                return worker

        if len(self._subagents) >= self.max_concurrent_agents:
            idle = next(
                (w for w in self._subagents.values() if w.id not in self._busy and not w.is_active),
                None,
            )
            if idle is not None:
                await self.terminate_subagent(idle.id)

        worker = await self.spawn(role)
        self._busy.add(worker.id)
        return worker

    async def _skip_task(self, task: SubagentTask, blocker: str) -> SubagentResult:
        reason = f"Skipped: dependency '{blocker}' did not complete"
        logger.warning(
            "orchestrator_task_skipped",
            session_id=self.session_id,
            task_id=task.id,
            dependency=blocker,
        )
        await self._publish(EventType.TASK_SKIPPED, task_id=task.id, data={"reason": reason})
        return self._synthetic_result(
            task,
            task.role or infer_role(task.description),
            SubagentState.CANCELLED,
            reason,
            skipped=True,
        )

    @staticmethod
    def _synthetic_result(
        task: SubagentTask,
        role: SubagentRole,
        state: SubagentState,
        error: str,
        subagent_id: str = "",
        skipped: bool = False,
    ) -> SubagentResult:
        """Build a result for a task that no worker finished."""
        now = time.time()
        status = SubagentStatus(
            id=subagent_id,
            task_id=task.id,
            role=role,
            state=state,
            start_time=now,
            end_time=now,
            error=error,
        )
        return SubagentResult(
            id=subagent_id,
            task_id=task.id,
            role=role,
            success=False,
            status=status,
            error=error,
            skipped=skipped,
        )

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def queue_task(self, task: SubagentTask) -> None:
        """Add a task to the queue for a later process_queue()."""
        await self.queue_tasks([task])

    async def queue_tasks(self, tasks: Sequence[SubagentTask]) -> None:
        """Add several tasks to the queue."""
        self._queue.extend(tasks)
        await self._publish(
            EventType.TASKS_QUEUED,
            data={"task_ids": [task.id for task in tasks], "queue_length": len(self._queue)},
        )

    async def process_queue(self) -> list[SubagentResult]:
        """Execute everything queued so far as one task set and empty the queue."""
        tasks, self._queue = self._queue, []
        return await self.execute_tasks(tasks)

    async def clear_queue(self) -> None:
        """Drop all queued tasks without running them."""
        dropped = len(self._queue)
        self._queue = []
        await self._publish(EventType.QUEUE_CLEARED, data={"dropped": dropped})

    def get_queue_length(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Results and status
    # ------------------------------------------------------------------

    def get_result(self, task_id: str) -> SubagentResult | None:
        return self._results.get(task_id)

    def get_all_results(self) -> dict[str, SubagentResult]:
        return dict(self._results)

    def clear_results(self) -> None:
        self._results.clear()

    def get_status(self) -> dict[str, int]:
        """Counts of workers, finished tasks, and queued tasks."""
        return {
            "total_subagents": len(self._subagents),
            "active_subagents": len(self.get_active_subagents()),
            "completed_tasks": len(self._results),
            "queued_tasks": len(self._queue),
        }

    def get_stats(self) -> dict[str, int]:
        """Aggregate outcome counts over every stored result."""
        results = list(self._results.values())
        return {
            "active_agents": len(self.get_active_subagents()),
            "total_results": len(results),
            "successful_tasks": sum(1 for r in results if r.success),
            "failed_tasks": sum(1 for r in results if not r.success),
        }

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def spawn(self, role: SubagentRole, **overrides: Any) -> Subagent:
        """Create and register a worker.

        Args:
            role: Worker role
            **overrides: SubagentConfig overrides (e.g. max_tool_rounds)

        Raises:
            AgentLimitExceeded: The orchestrator already owns
                ``max_concurrent_agents`` workers
        """
        if len(self._subagents) >= self.max_concurrent_agents:
            raise AgentLimitExceeded(
                f"Maximum concurrent agents ({self.max_concurrent_agents}) reached"
            )

        worker = Subagent(
            config=get_default_config(role, **overrides),
            llm_client=self.llm_client,
            event_bus=self.event_bus,
            session_id=self.session_id,
            tools=self.tools,
            working_directory=self.working_directory,
        )
        self._subagents[worker.id] = worker

        logger.info("subagent_spawned", subagent_id=worker.id, role=role.value)
        await self._publish(
            EventType.SUBAGENT_SPAWNED,
            agent_id=worker.id,
            agent_role=role.value,
            data={"role": role.value, "allowed_tools": list(worker.config.allowed_tools)},
        )
        return worker

    async def spawn_parallel(self, roles: Sequence[SubagentRole]) -> list[Subagent]:
        """Spawn one worker per role, all or nothing.

        Raises:
            AgentLimitExceeded: The workers would not all fit
        """
        if len(self._subagents) + len(roles) > self.max_concurrent_agents:
            raise AgentLimitExceeded(
                f"Cannot spawn {len(roles)} agents: "
                f"{len(self._subagents)}/{self.max_concurrent_agents} slots in use"
            )
        return list(await asyncio.gather(*(self.spawn(role) for role in roles)))

    async def terminate_subagent(self, subagent_id: str) -> bool:
        """Terminate and forget a worker. Returns False for unknown ids."""
        worker = self._subagents.pop(subagent_id, None)
        if worker is None:
            return False

        worker.terminate()
        self._busy.discard(subagent_id)
        logger.info("subagent_terminated", subagent_id=subagent_id)
        await self._publish(
            EventType.SUBAGENT_TERMINATED,
            agent_id=subagent_id,
            agent_role=worker.role.value,
        )
        return True

    async def terminate_all(self) -> None:
        for subagent_id in list(self._subagents):
            await self.terminate_subagent(subagent_id)

    def monitor(self, subagent_id: str) -> SubagentStatus | None:
        """Return a status snapshot of a worker, or None for unknown ids."""
        worker = self._subagents.get(subagent_id)
        return worker.get_status() if worker else None

    def get_active_subagents(self) -> list[Subagent]:
        return [worker for worker in self._subagents.values() if worker.is_active]

    async def send_message(
        self,
        subagent_id: str,
        content: str,
        message_type: str = "status",
    ) -> None:
        """Deliver a message to a worker.

        A ``cancellation`` message aborts the worker.

        Raises:
            SubagentNotFound: The orchestrator does not own ``subagent_id``
        """
        worker = self._subagents.get(subagent_id)
        if worker is None:
            raise SubagentNotFound(f"Subagent '{subagent_id}' not found")

        message = SubagentMessage(
            from_id=self.id,
            to_id=subagent_id,
            content=content,
            type=message_type,
        )
        worker.receive_message(message)
        await self._publish(
            EventType.SUBAGENT_MESSAGE,
            agent_id=subagent_id,
            agent_role=worker.role.value,
            data={"type": message_type, "content": content},
        )

    def cancel(self) -> None:
        """Abort every worker and stop dispatching new tasks in the current run."""
        self._cancelled = True
        for worker in self._subagents.values():
            worker.abort()
        logger.info(
            "orchestrator_cancelled",
            session_id=self.session_id,
            workers=len(self._subagents),
        )

    async def _publish(
        self,
        event_type: EventType,
        *,
        task_id: str | None = None,
        agent_id: str | None = None,
        agent_role: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                session_id=self.session_id,
                agent_id=agent_id or self.id,
                agent_role=agent_role or "orchestrator",
                task_id=task_id,
                data=data or {},
            )
        )
