"""Tests for AgentRunner: the bounded tool-call loop.

Covers:
- final answers as plain text and as block lists
- tool calls routed to the pool and fed back as tool_result blocks
- step limit: exactly max_steps model calls, then step_limit_exceeded
- faults from the model, tools, pool launch and timeouts become agent_execution_failed
- tool servers torn down once per run on every exit path
- transient API errors retried without consuming steps
"""

import asyncio

import httpx
import pytest
from anthropic import APIStatusError

from conftest import FakePoolFactory, fake_llm, model_response, text_block, tool_block
from issue_relay.agents.agent_runner import AgentRunner, redact_tool_input
from issue_relay.models.schemas import AgentConfig, ErrorKind, StageFailure, StageSuccess, ToolServerConfig
from issue_relay.tools.tool_session import MissingToolError, ToolCallOutcome


def _config(max_steps: int = 5, timeout_seconds: float | None = None) -> AgentConfig:
    server = ToolServerConfig(name="data-store", command="npx", args=("-y", "server"))
    return AgentConfig(
        tool_servers={"data-store": server},
        model_id="claude-test",
        temperature=0.1,
        max_steps=max_steps,
        timeout_seconds=timeout_seconds,
    )


def _runner(llm, pools: FakePoolFactory) -> AgentRunner:
    runner = AgentRunner(api_key="sk-test", agent_name="test_agent",
                         client_factory=lambda config: llm, pool_factory=pools)
    runner.retry_delays = [0, 0, 0]
    return runner


def _api_status_error(status: int) -> APIStatusError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(status, request=request)
    return APIStatusError("overloaded", response=response, body=None)


class TestFinalAnswers:

    @pytest.mark.asyncio
    async def test_plain_text_answer(self, pool_factory):
        llm = fake_llm(model_response(text_block("User found: Jane Doe")))
        result = await _runner(llm, pool_factory).run("look up jane", _config())

        assert isinstance(result, StageSuccess)
        assert result.output == "User found: Jane Doe"
        assert result.steps == 1

    @pytest.mark.asyncio
    async def test_multi_block_answer_kept_as_blocks(self, pool_factory):
        llm = fake_llm(model_response(text_block("part one"), text_block("part two")))
        result = await _runner(llm, pool_factory).run("look up", _config())

        assert result.output == [
            {"type": "text", "text": "part one"},
            {"type": "text", "text": "part two"},
        ]

    @pytest.mark.asyncio
    async def test_instruction_is_first_user_message(self, pool_factory):
        llm = fake_llm(model_response(text_block("done")))
        await _runner(llm, pool_factory).run("find the user", _config())

        kwargs = llm.chat_with_tools.call_args.kwargs
        assert kwargs["messages"][0] == {"role": "user", "content": "find the user"}
        assert [t["name"] for t in kwargs["tools"]] == ["execute_sql"]

    @pytest.mark.asyncio
    async def test_usage_read_from_client(self, pool_factory):
        llm = fake_llm(model_response(text_block("done")))
        await _runner(llm, pool_factory).run("x", _config())
        llm.get_total_usage.assert_called_once()

    @pytest.mark.asyncio
    async def test_pool_receives_configured_servers(self, pool_factory):
        llm = fake_llm(model_response(text_block("done")))
        await _runner(llm, pool_factory).run("x", _config())
        assert list(pool_factory.configs[0]) == ["data-store"]


class TestToolCalls:

    @pytest.mark.asyncio
    async def test_tool_result_fed_back(self):
        pools = FakePoolFactory(tools={"execute_sql": '[{"email": "jane@example.com"}]'})
        llm = fake_llm(
            model_response(tool_block("execute_sql", {"query": "select * from users"})),
            model_response(text_block("Jane has 2 cart items")),
        )
        result = await _runner(llm, pools).run("look up", _config())

        assert result.output == "Jane has 2 cart items"
        assert result.steps == 2
        assert pools.calls == [("execute_sql", {"query": "select * from users"})]

        second_messages = llm.chat_with_tools.call_args_list[1].kwargs["messages"]
        assert second_messages[1]["role"] == "assistant"
        assert second_messages[2] == {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": "toolu_01",
                "content": '[{"email": "jane@example.com"}]',
            }],
        }

    @pytest.mark.asyncio
    async def test_tool_error_result_is_fed_back_not_fatal(self):
        pools = FakePoolFactory(tools={"execute_sql": ToolCallOutcome(text="syntax error", is_error=True)})
        llm = fake_llm(
            model_response(tool_block("execute_sql", {"query": "selec"})),
            model_response(text_block("could not query")),
        )
        result = await _runner(llm, pools).run("look up", _config())

        assert isinstance(result, StageSuccess)
        fed_back = llm.chat_with_tools.call_args_list[1].kwargs["messages"][2]["content"][0]
        assert fed_back["is_error"] is True
        assert fed_back["content"] == "syntax error"

    @pytest.mark.asyncio
    async def test_tool_outside_allowed_set_is_not_executed(self):
        pools = FakePoolFactory(tools={"execute_sql": "[]"})
        llm = fake_llm(
            model_response(tool_block("apply_migration", {"query": "drop table users"})),
            model_response(text_block("ok")),
        )
        result = await _runner(llm, pools).run("look up", _config())

        assert isinstance(result, StageSuccess)
        assert pools.calls == []
        fed_back = llm.chat_with_tools.call_args_list[1].kwargs["messages"][2]["content"][0]
        assert fed_back["is_error"] is True
        assert "apply_migration" in fed_back["content"]


class TestStepLimit:

    @pytest.mark.asyncio
    async def test_exactly_max_steps_round_trips(self, pool_factory):
        llm = fake_llm(*[model_response(tool_block("execute_sql")) for _ in range(10)])
        result = await _runner(llm, pool_factory).run("loop forever", _config(max_steps=3))

        assert isinstance(result, StageFailure)
        assert result.kind == ErrorKind.STEP_LIMIT_EXCEEDED
        assert result.steps == 3
        assert llm.chat_with_tools.await_count == 3

    @pytest.mark.asyncio
    async def test_answer_on_last_step_succeeds(self, pool_factory):
        llm = fake_llm(
            model_response(tool_block("execute_sql")),
            model_response(tool_block("execute_sql")),
            model_response(text_block("finally")),
        )
        result = await _runner(llm, pool_factory).run("x", _config(max_steps=3))
        assert isinstance(result, StageSuccess)
        assert result.output == "finally"


class TestFaults:

    @pytest.mark.asyncio
    async def test_model_fault_mid_loop(self, pool_factory):
        llm = fake_llm(model_response(tool_block("execute_sql")), RuntimeError("connection reset"))
        result = await _runner(llm, pool_factory).run("x", _config())

        assert isinstance(result, StageFailure)
        assert result.kind == ErrorKind.AGENT_EXECUTION_FAILED
        assert result.detail == "connection reset"
        assert result.steps == 1

    @pytest.mark.asyncio
    async def test_tool_transport_fault(self):
        pools = FakePoolFactory(tools={"execute_sql": ConnectionError("server exited")})
        llm = fake_llm(model_response(tool_block("execute_sql")))
        result = await _runner(llm, pools).run("x", _config())

        assert result.kind == ErrorKind.AGENT_EXECUTION_FAILED
        assert result.detail == "server exited"

    @pytest.mark.asyncio
    async def test_launch_failure(self):
        pools = FakePoolFactory(fail_on_enter=FileNotFoundError("npx not found"))
        llm = fake_llm()
        result = await _runner(llm, pools).run("x", _config())

        assert result.kind == ErrorKind.AGENT_EXECUTION_FAILED
        assert "npx not found" in result.detail
        llm.chat_with_tools.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_without_required_tool(self):
        pools = FakePoolFactory(fail_on_enter=MissingToolError("issue-tracker", ["create_issue"]))
        llm = fake_llm()
        result = await _runner(llm, pools).run("file it", _config())

        assert result.kind == ErrorKind.AGENT_EXECUTION_FAILED
        assert "create_issue" in result.detail
        llm.chat_with_tools.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_retryable_api_error(self, pool_factory):
        llm = fake_llm(_api_status_error(401))
        result = await _runner(llm, pool_factory).run("x", _config())

        assert result.kind == ErrorKind.AGENT_EXECUTION_FAILED
        assert llm.chat_with_tools.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout(self, pool_factory):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        llm = fake_llm()
        llm.chat_with_tools.side_effect = slow
        result = await _runner(llm, pool_factory).run("x", _config(timeout_seconds=0.05))

        assert result.kind == ErrorKind.AGENT_EXECUTION_FAILED
        assert "timed out" in result.detail
        assert pool_factory.launches == pool_factory.teardowns == 1


class TestTeardown:
    """Tool servers are released exactly once per run."""

    @pytest.mark.asyncio
    async def test_success_path(self, pool_factory):
        llm = fake_llm(model_response(text_block("ok")))
        await _runner(llm, pool_factory).run("x", _config())
        assert pool_factory.launches == pool_factory.teardowns == 1

    @pytest.mark.asyncio
    async def test_fault_path(self, pool_factory):
        llm = fake_llm(RuntimeError("boom"))
        await _runner(llm, pool_factory).run("x", _config())
        assert pool_factory.launches == pool_factory.teardowns == 1

    @pytest.mark.asyncio
    async def test_step_limit_path(self, pool_factory):
        llm = fake_llm(*[model_response(tool_block("execute_sql")) for _ in range(3)])
        await _runner(llm, pool_factory).run("x", _config(max_steps=3))
        assert pool_factory.launches == pool_factory.teardowns == 1

    @pytest.mark.asyncio
    async def test_each_run_gets_its_own_pool(self, pool_factory):
        llm = fake_llm(model_response(text_block("a")), model_response(text_block("b")))
        runner = _runner(llm, pool_factory)
        await runner.run("x", _config())
        await runner.run("y", _config())
        assert pool_factory.launches == pool_factory.teardowns == 2


class TestRetries:

    @pytest.mark.asyncio
    async def test_overload_retried_within_the_same_step(self, pool_factory):
        llm = fake_llm(_api_status_error(529), model_response(text_block("ok")))
        result = await _runner(llm, pool_factory).run("x", _config(max_steps=1))

        assert isinstance(result, StageSuccess)
        assert result.steps == 1
        assert llm.chat_with_tools.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, pool_factory):
        llm = fake_llm(*[_api_status_error(503) for _ in range(4)])
        result = await _runner(llm, pool_factory).run("x", _config())

        assert result.kind == ErrorKind.AGENT_EXECUTION_FAILED
        assert llm.chat_with_tools.await_count == 4


def test_redact_tool_input():
    redacted = redact_tool_input({"query": "select 1", "access_token": "abc", "apiKey": "k", "Password": "p"})
    assert redacted == {"query": "select 1", "access_token": "***", "apiKey": "***", "Password": "***"}


def test_default_client_bound_to_config(monkeypatch):
    created = {}

    class _Client:
        def __init__(self, **kwargs):
            created.update(kwargs)

    monkeypatch.setattr("issue_relay.agents.agent_runner.AnthropicClient", _Client)
    runner = AgentRunner(api_key="sk-test", agent_name="lookup_agent")
    runner._client_factory(_config())

    assert created == {
        "api_key": "sk-test",
        "model": "claude-test",
        "temperature": 0.1,
        "agent_name": "lookup_agent",
    }
