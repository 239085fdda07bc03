"""Dependency resolution, subagent workers, loop safety, and orchestration.

This module exports the key components needed for orchestrated execution:
- DependencyResolver for turning task sets into parallel-safe batches
- Subagent workers and the SubagentOrchestrator that drives them
- LoopDetector for vetting tool calls before they run
- Local tools and the LLM client with retry logic
"""

from agent_swarm.agents.dependency_resolver import (
    DependencyGraph,
    DependencyNode,
    DependencyResolver,
)
from agent_swarm.agents.errors import (
    AgentLimitExceeded,
    AgentSwarmError,
    CircularDependencyError,
    DanglingDependencyError,
    DependencyError,
    RoundLimitExceeded,
    SubagentAborted,
    SubagentNotFound,
    SubagentTimeout,
    ToolArgumentError,
)
from agent_swarm.agents.llm import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
)
from agent_swarm.agents.loop_detector import LoopDetectionResult, LoopDetector
from agent_swarm.agents.orchestrator import SubagentOrchestrator, infer_role
from agent_swarm.agents.subagent import Subagent
from agent_swarm.agents.tools import (
    BaseTool,
    BashTool,
    SearchTool,
    TextEditorTool,
    ToolResult,
    create_default_tools,
)
from agent_swarm.agents.types import (
    ChatEntry,
    SubagentConfig,
    SubagentMessage,
    SubagentResult,
    SubagentRole,
    SubagentState,
    SubagentStatus,
    SubagentTask,
    TaskContext,
    get_default_config,
)

__all__ = [
    # Resolver
    "DependencyGraph",
    "DependencyNode",
    "DependencyResolver",
    # Errors
    "AgentLimitExceeded",
    "AgentSwarmError",
    "CircularDependencyError",
    "DanglingDependencyError",
    "DependencyError",
    "RoundLimitExceeded",
    "SubagentAborted",
    "SubagentNotFound",
    "SubagentTimeout",
    "ToolArgumentError",
    # LLM
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    # Loop safety
    "LoopDetectionResult",
    "LoopDetector",
    # Workers
    "Subagent",
    "SubagentOrchestrator",
    "infer_role",
    # Tools
    "BaseTool",
    "BashTool",
    "SearchTool",
    "TextEditorTool",
    "ToolResult",
    "create_default_tools",
    # Types
    "ChatEntry",
    "SubagentConfig",
    "SubagentMessage",
    "SubagentResult",
    "SubagentRole",
    "SubagentState",
    "SubagentStatus",
    "SubagentTask",
    "TaskContext",
    "get_default_config",
]
