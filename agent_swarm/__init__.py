"""agent-swarm: dependency-aware parallel subagent execution."""

__version__ = "0.1.0"
