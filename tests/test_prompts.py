"""Tests for agents/prompts.py and the role/config helpers in agents/types.py."""

import pytest
from pydantic import ValidationError

from agent_swarm.agents.prompts import (
    ROLE_PROMPTS,
    build_task_prompt,
    build_tooling_contract,
    get_subagent_system_prompt,
)
from agent_swarm.agents.types import (
    ChatEntry,
    SubagentRole,
    SubagentState,
    SubagentStatus,
    TaskContext,
    get_default_config,
    parse_subagent_role,
)
from tests.conftest import make_task

# =========================================================================
# Task prompt
# =========================================================================


class TestBuildTaskPrompt:
    def test_description_only(self) -> None:
        assert build_task_prompt(make_task("a", description="Add a CLI")) == "Task: Add a CLI\n\n"

    def test_context_sections(self) -> None:
        context = TaskContext(working_directory="/work/app", files=("a.py", "b.py"))
        prompt = build_task_prompt(make_task("a", description="Fix it", context=context))

        assert prompt.startswith("Task: Fix it\n\nContext:\n")
        assert "- Working Directory: /work/app\n" in prompt
        assert "- Relevant Files: a.py, b.py\n" in prompt
        assert "Recent conversation" not in prompt

    def test_history_is_windowed_and_truncated(self) -> None:
        history = tuple(
            ChatEntry(type="user", content=f"message {i} " + "x" * 300) for i in range(8)
        )
        context = TaskContext(conversation_history=history)
        prompt = build_task_prompt(make_task("a", context=context))

        assert "message 2" not in prompt
        for i in range(3, 8):
            assert f"user: message {i} " in prompt
        longest = max(len(line) for line in prompt.splitlines())
        assert longest == len("user: ") + 200

    def test_code_snippets(self) -> None:
        context = TaskContext(code_snippets=("def f():\n    pass",))
        prompt = build_task_prompt(make_task("a", context=context))
        assert "```\ndef f():\n    pass\n```" in prompt


# =========================================================================
# System prompt
# =========================================================================


class TestSystemPrompt:
    def test_role_prompt_and_contract(self) -> None:
        config = get_default_config(SubagentRole.TESTING)
        prompt = get_subagent_system_prompt(config)

        assert prompt.startswith(ROLE_PROMPTS[SubagentRole.TESTING])
        assert "## Tooling Contract" in prompt
        assert "Available tools: bash, text_editor, search." in prompt

    def test_custom_prompt_replaces_role_prompt(self) -> None:
        config = get_default_config(SubagentRole.TESTING, custom_system_prompt="Only run pytest.")
        prompt = get_subagent_system_prompt(config)

        assert prompt.startswith("Only run pytest.")
        assert ROLE_PROMPTS[SubagentRole.TESTING] not in prompt
        assert "## Tooling Contract" in prompt

    def test_contract_mentions_only_allowed_tools(self) -> None:
        contract = build_tooling_contract(("search",))
        assert "`search`" in contract
        assert "text_editor" not in contract
        assert "shell" not in contract

    def test_every_role_has_a_prompt(self) -> None:
        assert set(ROLE_PROMPTS) == set(SubagentRole)


# =========================================================================
# Role defaults and parsing
# =========================================================================


class TestRoleConfig:
    def test_defaults(self) -> None:
        config = get_default_config(SubagentRole.DOCUMENTATION)
        assert config.allowed_tools == ("text_editor", "search")
        assert config.max_tool_rounds == 15
        assert config.context_depth == 10

    def test_overrides_and_none_ignored(self) -> None:
        config = get_default_config(SubagentRole.GENERAL, max_tool_rounds=5, timeout=None)
        assert config.max_tool_rounds == 5
        assert config.timeout is None
        assert config.allowed_tools == ("bash", "text_editor", "search")

    def test_analysis_cannot_edit(self) -> None:
        assert "text_editor" not in get_default_config(SubagentRole.ANALYSIS).allowed_tools

    def test_invalid_override_rejected(self) -> None:
        with pytest.raises(ValidationError):
            get_default_config(SubagentRole.GENERAL, max_tool_rounds=0)

    @pytest.mark.parametrize(
        ("value", "role"),
        [
            ("testing", SubagentRole.TESTING),
            (" Debug ", SubagentRole.DEBUG),
            ("wizard", SubagentRole.GENERAL),
            (None, SubagentRole.GENERAL),
            ("", SubagentRole.GENERAL),
        ],
    )
    def test_parse_subagent_role(self, value: str | None, role: SubagentRole) -> None:
        assert parse_subagent_role(value) == role


class TestTaskAndStatusTypes:
    def test_task_is_frozen(self) -> None:
        task = make_task("a")
        with pytest.raises(ValidationError):
            task.description = "changed"  # type: ignore[misc]

    @pytest.mark.parametrize("field", [{"max_tool_rounds": 0}, {"timeout": 0}])
    def test_task_budgets_validated(self, field: dict) -> None:
        with pytest.raises(ValidationError):
            make_task("a", **field)

    def test_status_snapshot_is_independent(self) -> None:
        status = SubagentStatus(id="w", task_id="t", role=SubagentRole.GENERAL)
        snapshot = status.snapshot()
        status.tools_used.append("bash")
        status.state = SubagentState.RUNNING

        assert snapshot.tools_used == []
        assert snapshot.state == SubagentState.PENDING
