"""Lifecycle events emitted by subagents and the orchestrator."""

from agent_swarm.events.bus import EventBus
from agent_swarm.events.types import AgentEvent, EventType, LLMMetrics

__all__ = ["AgentEvent", "EventBus", "EventType", "LLMMetrics"]
