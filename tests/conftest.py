from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from issue_relay.integrations.connection_config import ResolvedSettings
from issue_relay.models.schemas import StageSuccess, TokenUsage
from issue_relay.tools.tool_session import ToolCallOutcome


# ---------------------------------------------------------------------------
# Model response builders
# ---------------------------------------------------------------------------

def text_block(text: str):
    return SimpleNamespace(type="text", text=text)


def tool_block(name: str, tool_input: dict | None = None, block_id: str = "toolu_01"):
    return SimpleNamespace(type="tool_use", name=name, input=tool_input or {}, id=block_id)


def model_response(*blocks, stop_reason: str | None = None, input_tokens: int = 10, output_tokens: int = 5):
    if stop_reason is None:
        stop_reason = "tool_use" if any(b.type == "tool_use" for b in blocks) else "end_turn"
    return SimpleNamespace(
        content=list(blocks),
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def fake_llm(*responses):
    """Model client stand-in; each item is returned (or raised) by successive calls."""
    llm = MagicMock()
    llm.chat_with_tools = AsyncMock(side_effect=list(responses))
    llm.get_total_usage.return_value = TokenUsage(
        agent_name="test_agent", input_tokens=10, output_tokens=5, total_tokens=15,
    )
    return llm


# ---------------------------------------------------------------------------
# Tool-server pool stand-in
# ---------------------------------------------------------------------------

class FakePoolFactory:
    """Builds fake pools and counts launches and teardowns across runs."""

    def __init__(self, tools: dict | None = None, fail_on_enter: Exception | None = None):
        # tool name -> result text, ToolCallOutcome, or Exception to raise
        self.tools = tools if tools is not None else {"execute_sql": "[]"}
        self.fail_on_enter = fail_on_enter
        self.launches = 0
        self.teardowns = 0
        self.calls: list[tuple[str, dict]] = []
        self.configs: list[dict] = []

    def __call__(self, configs):
        self.configs.append(configs)
        return _FakePool(self)


class _FakePool:
    def __init__(self, factory: FakePoolFactory):
        self.factory = factory

    async def __aenter__(self):
        if self.factory.fail_on_enter is not None:
            raise self.factory.fail_on_enter
        self.factory.launches += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.factory.teardowns += 1

    def anthropic_tools(self):
        return [
            {"name": name, "description": "", "input_schema": {"type": "object", "properties": {}}}
            for name in self.factory.tools
        ]

    def has_tool(self, name):
        return name in self.factory.tools

    async def call(self, name, arguments):
        self.factory.calls.append((name, arguments))
        result = self.factory.tools[name]
        if isinstance(result, Exception):
            raise result
        if isinstance(result, ToolCallOutcome):
            return result
        return ToolCallOutcome(text=result)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return ResolvedSettings(
        anthropic_api_key="sk-ant-test",
        supabase_access_token="sbp_test",
        github_personal_access_token="ghp_test",
        supabase_project_ref="vcisedfdaufqkvyvkfcy",
        lookup_max_steps=30,
        issue_max_steps=10,
    )


@pytest.fixture
def pool_factory():
    return FakePoolFactory()


def stub_runner(*results):
    """AgentRunner stand-in returning the given StageResults in order."""
    runner = MagicMock()
    runner.run = AsyncMock(side_effect=list(results))
    return runner


@pytest.fixture
def lookup_success():
    return StageSuccess(output="Jane Doe, order #42", steps=3)
