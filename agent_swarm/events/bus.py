"""Async event bus for orchestrator and subagent lifecycle notifications.

The EventBus is an explicit, caller-owned instance: the orchestrator creates
one (or receives one) and hands it to every worker it spawns. Subscribers
drain per-session asyncio.Queue objects; publishing is awaited, so events
reach every queue in the order the producers emitted them.
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from agent_swarm.events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus keyed by session.

    Event Buffering:
        Events published before any subscriber connects are buffered and
        handed to the first subscriber, so consumers that attach after a run
        has begun still see its start events.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("swarm_123")
        >>> await bus.publish(AgentEvent(
        ...     type=EventType.TASK_STARTED,
        ...     session_id="swarm_123",
        ...     task_id="build-api",
        ... ))
        >>> event = await queue.get()
        >>> await bus.close_session("swarm_123")

    Attributes:
        _subscribers: Dict mapping session_id to list of subscriber queues
        _event_buffer: Dict mapping session_id to events awaiting a subscriber
        _event_history: Dict mapping session_id to everything published
        _lock: Lock guarding the registries
    """

    # Maximum number of events retained per session, in history and in the
    # pre-subscriber buffer alike.
    MAX_HISTORY_PER_SESSION = 5000

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, list[AgentEvent]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, session_id: str) -> asyncio.Queue[AgentEvent]:
        """Subscribe to events for a session.

        Buffered events for the session are delivered to the new queue
        immediately.

        Args:
            session_id: The session to subscribe to

        Returns:
            A queue receiving AgentEvent objects for this session
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[session_id].append(queue)
            subscriber_count = len(self._subscribers[session_id])
            buffered_events = self._event_buffer.pop(session_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.debug(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Remove a queue from a session. Unknown queues are ignored."""
        with self._lock:
            subscribers = self._subscribers.get(session_id)
            if not subscribers or queue not in subscribers:
                logger.warning("unsubscribe_queue_not_found", session_id=session_id)
                return
            subscribers.remove(queue)
            if not subscribers:
                del self._subscribers[session_id]

        logger.debug("subscriber_removed", session_id=session_id)

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all subscribers for its session.

        The event is stored in the session history. With no subscribers it
        is buffered until one connects.

        Args:
            event: The AgentEvent to publish
        """
        with self._lock:
            if event.type != EventType.SESSION_CLOSED:
                history = self._event_history[event.session_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_SESSION:
                    self._event_history[event.session_id] = history[-self.MAX_HISTORY_PER_SESSION:]

            subscribers = list(self._subscribers.get(event.session_id, []))

            if not subscribers:
                buffer = self._event_buffer[event.session_id]
                buffer.append(event)
                if len(buffer) > self.MAX_HISTORY_PER_SESSION:
                    self._event_buffer[event.session_id] = buffer[-self.MAX_HISTORY_PER_SESSION:]
                return

        for queue in subscribers:
            # Queues are unbounded, so this never waits
            queue.put_nowait(event)

        logger.debug(
            "event_published",
            session_id=event.session_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            task_id=event.task_id,
        )

    def get_event_history(self, session_id: str) -> list[AgentEvent]:
        """Return all stored events for a session in publish order."""
        with self._lock:
            return list(self._event_history.get(session_id, []))

    async def close_session(self, session_id: str) -> None:
        """Close a session and notify all subscribers.

        Each subscriber queue receives a SESSION_CLOSED sentinel so consumer
        loops can exit. Buffered events are dropped; history is preserved.

        Args:
            session_id: The session to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(session_id, [])
            buffer_count = len(self._event_buffer.pop(session_id, []))

        for queue in queues_to_signal:
            queue.put_nowait(
                AgentEvent(
                    type=EventType.SESSION_CLOSED,
                    session_id=session_id,
                    data={"reason": "session_closed"},
                )
            )

        logger.info(
            "session_closed",
            session_id=session_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
        )

    def get_subscriber_count(self, session_id: str) -> int:
        """Get the number of subscribers for a session."""
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def clear_event_history(self, session_id: str) -> None:
        """Forget the stored history for a session."""
        with self._lock:
            self._event_history.pop(session_id, None)
