"""System prompts and task prompts for subagent workers.

This module contains:
- ROLE_PROMPTS: Role-specific instructions, one per SubagentRole
- build_tooling_contract: Shared guidance on the local tools
- get_subagent_system_prompt: The system message a worker starts with
- build_task_prompt: The single user turn describing one task
"""

from agent_swarm.agents.types import SubagentConfig, SubagentRole, SubagentTask

# Entries of recent conversation forwarded to a worker, and their length cap
TASK_HISTORY_ENTRIES = 5
TASK_HISTORY_ENTRY_CHARS = 200

ROLE_PROMPTS: dict[SubagentRole, str] = {
    SubagentRole.GENERAL: """\
You are a focused coding subagent. Handle the assigned task directly.
Be accurate and brief, follow the conventions already in the code, and
verify your changes before you finish.""",
    SubagentRole.TESTING: """\
You are a testing subagent. Write tests for the code you are pointed at.

## Workflow
1. Read existing tests to learn the framework and patterns in use.
2. List scenarios: the happy path, edge cases, and error handling.
3. Write tests that match the project's conventions.
4. Run the tests and make sure they pass.

Name tests after the behavior they check, mock external services, and
cover empty and boundary inputs. Stay on testing.""",
    SubagentRole.DOCUMENTATION: """\
You are a documentation subagent. Document the code you are pointed at.

## Workflow
1. Read the code thoroughly.
2. Identify the public API, the key concepts, and the limitations.
3. Write documentation in the project's existing style.

Include runnable examples, document edge cases, and skip the obvious.
Stay on documentation.""",
    SubagentRole.REFACTORING: """\
You are a refactoring subagent. Improve structure without changing behavior.

## Workflow
1. Understand the current behavior completely.
2. Decide what changes and what stays.
3. Apply one refactoring at a time.
4. Run the tests after every change.

Preserve behavior exactly, keep to existing conventions, and avoid
speculative abstractions. Stay on refactoring.""",
    SubagentRole.ANALYSIS: """\
You are a code analysis subagent. Review the code you are pointed at and
report findings; do not modify files.

Classify each finding as CRITICAL (security, data loss, crashes), MAJOR
(bugs), MINOR (style, small improvements) or INFO, and give an actionable
fix for each. Report only issues you can point to in the code.""",
    SubagentRole.DEBUG: """\
You are a debugging subagent. Fix verified bugs only.

## Workflow
1. Reproduce the failure or locate concrete evidence of it.
2. Find the root cause before changing anything.
3. Apply the smallest fix that addresses the cause.
4. Re-run the reproduction to confirm the fix.

Do not refactor unrelated code while debugging.""",
    SubagentRole.PERFORMANCE: """\
You are a performance subagent. Make the code you are pointed at faster or
leaner without changing its behavior.

## Workflow
1. Measure or reason concretely about where time and memory go.
2. Target the dominant cost first.
3. Verify behavior is unchanged and report the improvement.""",
}


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic system prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def build_tooling_contract(allowed_tools: tuple[str, ...]) -> str:
    """Build tool usage guidance limited to the tools a worker actually has."""
    lines = ["## Tooling Contract", f"Available tools: {', '.join(allowed_tools) or 'none'}."]
    if "text_editor" in allowed_tools:
        lines.append(
            "- Inspect a file with `text_editor` `view` before editing it; "
            "`str_replace` needs an exact, unique match."
        )
    if "bash" in allowed_tools:
        lines.append("- Keep shell commands short and non-interactive.")
    if "search" in allowed_tools:
        lines.append("- Use `search` to locate code instead of guessing paths.")
    lines.append(
        "- Never repeat a tool call that just failed without changing something; "
        "repeated identical calls are blocked."
    )
    lines.append(
        "- When the task is done, reply with a short summary and no tool calls."
    )
    return "\n".join(lines)


def get_subagent_system_prompt(config: SubagentConfig) -> str:
    """Get the system prompt for a worker.

    A custom system prompt replaces the role prompt; the tooling contract
    is always appended.
    """
    return compose_prompt_sections(
        config.custom_system_prompt or ROLE_PROMPTS[config.role],
        build_tooling_contract(config.allowed_tools),
    )


def build_task_prompt(task: SubagentTask) -> str:
    """Render a task and its context as one user turn.

    Only the last few conversation entries are included, each truncated, so
    a long planner conversation cannot flood the worker's context.
    """
    prompt = f"Task: {task.description}\n\n"

    context = task.context
    if context is None:
        return prompt

    prompt += "Context:\n"
    if context.working_directory:
        prompt += f"- Working Directory: {context.working_directory}\n"
    if context.files:
        prompt += f"- Relevant Files: {', '.join(context.files)}\n"
    if context.conversation_history:
        recent = context.conversation_history[-TASK_HISTORY_ENTRIES:]
        entries = "\n".join(
            f"{entry.type}: {entry.content[:TASK_HISTORY_ENTRY_CHARS]}" for entry in recent
        )
        prompt += f"\nRecent conversation:\n{entries}\n"
    for snippet in context.code_snippets:
        prompt += f"\n```\n{snippet}\n```\n"

    return prompt
