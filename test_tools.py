"""
Tests for the tool invocation layer: tools/base.py, tools/schemas.py,
tools/registry.py, tools/invocation.py and tools/dispatch.py
"""
import asyncio

import pytest

from agent.cache import ResultCache
from agent.cancellation import CancellationToken
from agent.confirmation import ApprovalScope, ConfirmationBroker, ConfirmationResponse
from agent.errors import FatalError, NetworkError, ValidationError
from agent.events import EventBus, PERMISSION_ASKED
from agent.resilience import RetryConfig, RetryManager
from tools import (
    AlwaysConfirm,
    ApprovalMemory,
    CommandPolicy,
    FileExtensionPolicy,
    Tool,
    ToolDispatcher,
    ToolKind,
    ToolRegistry,
    ToolResult,
    build_invocation,
    ConfirmationGate,
)


ECHO_SCHEMA = {
    "type": "object",
    "properties": {
        "text": {"type": "string"},
        "count": {"type": "integer", "minimum": 1},
    },
    "required": ["text"],
    "additionalProperties": False,
}

COMMAND_SCHEMA = {
    "type": "object",
    "properties": {"command": {"type": "string"}},
    "required": ["command"],
}


def echo_tool(calls, name="echo", **kwargs):
    async def handler(params, ctx):
        calls.append(params)
        return ToolResult.ok(params.get("text") or params.get("command", ""))

    kwargs.setdefault("param_schema", ECHO_SCHEMA)
    return Tool(name=name, handler=handler, **kwargs)


def responder(bus, broker, response, asked):
    def on_asked(payload):
        asked.append(payload)
        broker.resolve(payload["id"], response)

    bus.subscribe(PERMISSION_ASKED, on_asked)


def dispatcher_for(*tools_, broker=None, **kwargs):
    return ToolDispatcher(ToolRegistry(tools_), broker, **kwargs)


async def dispatch(dispatcher, name, params, approvals=None, token=None, **kwargs):
    return await dispatcher.dispatch(
        name,
        params,
        session_id="s1",
        approvals=approvals if approvals is not None else ApprovalMemory(),
        cancellation=token or CancellationToken(),
        **kwargs,
    )


class TestValidation:

    def test_all_violations_reported_together(self):
        tool = echo_tool([])
        with pytest.raises(ValidationError) as exc_info:
            build_invocation(tool, {"count": 0, "extra": True})
        problems = exc_info.value.context["errors"]
        assert len(problems) == 3
        assert not exc_info.value.retryable

    def test_non_object_params_rejected(self):
        with pytest.raises(ValidationError):
            build_invocation(echo_tool([]), ["not", "an", "object"])

    def test_affected_resources_from_resource_keys(self):
        tool = echo_tool([], resource_keys=("text",))
        invocation = build_invocation(tool, {"text": "a.py"})
        assert invocation.affected_resources == ["a.py"]

    @pytest.mark.asyncio
    async def test_invalid_params_never_reach_handler(self):
        calls = []
        result = await dispatch(dispatcher_for(echo_tool(calls)), "echo", {"count": "x"})
        assert not result.success
        assert result.error_type == "VALIDATION_ERROR"
        assert calls == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await dispatch(dispatcher_for(), "nope", {})
        assert result.error["code"] == "UNKNOWN_TOOL"


class TestRegistry:

    def test_duplicate_names_rejected(self):
        registry = ToolRegistry([echo_tool([])])
        with pytest.raises(ValueError):
            registry.register(echo_tool([]))

    def test_invalid_schema_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            ToolRegistry([echo_tool([], param_schema={"type": "not-a-type"})])
        assert exc_info.value.code == "INVALID_SCHEMA"

    def test_definitions(self):
        registry = ToolRegistry([echo_tool([], description="Echo text back")])
        assert "echo" in registry
        assert registry.definitions() == [
            {"name": "echo", "description": "Echo text back", "input_schema": ECHO_SCHEMA}
        ]
        assert registry.unregister("echo")
        assert len(registry) == 0


class TestPolicies:

    def test_command_policy(self):
        policy = CommandPolicy()
        assert policy.evaluate("sh", {"command": "rm -rf build"}).blocked
        shared = policy.evaluate("sh", {"command": "git push origin main"})
        assert shared.require_approval and shared.risk_level == "high"
        assert policy.evaluate("sh", {"command": "ls -la"}).risk_level == "medium"
        assert policy.signature("sh", {"command": "git status --short"}) == "cmd:sh:git status"

        lenient = CommandPolicy(block_destructive=False)
        decision = lenient.evaluate("sh", {"command": "rm -rf build"})
        assert not decision.blocked and decision.require_approval

    def test_file_extension_policy(self):
        policy = FileExtensionPolicy()
        assert policy.signature("write_file", {"path": "src/a.py"}) == "ext:write_file:.py"
        assert policy.signature("write_file", {"path": ".env"}) == "ext:write_file:.env"
        assert policy.evaluate("write_file", {"path": "certs/server.pem"}).risk_level == "high"


class TestConfirmation:

    @pytest.mark.asyncio
    async def test_denied_call_never_runs(self):
        bus = EventBus()
        broker = ConfirmationBroker(bus)
        asked = []
        responder(bus, broker, ConfirmationResponse.denied("not now"), asked)
        calls = []
        tool = echo_tool(calls, confirmation_policy=AlwaysConfirm())

        result = await dispatch(dispatcher_for(tool, broker=broker), "echo", {"text": "hi"})

        assert not result.success
        assert result.error_type == "PERMISSION_DENIED"
        assert "not now" in result.error_message
        assert calls == []
        assert len(asked) == 1

    @pytest.mark.asyncio
    async def test_blocked_command_skips_confirmation(self):
        bus = EventBus()
        broker = ConfirmationBroker(bus)
        asked = []
        responder(bus, broker, ConfirmationResponse(approved=True), asked)
        calls = []
        tool = echo_tool(calls, name="sh", param_schema=COMMAND_SCHEMA, confirmation_policy=CommandPolicy())

        result = await dispatch(dispatcher_for(tool, broker=broker), "sh", {"command": "rm -rf /tmp/x"})

        assert result.error["code"] == "BLOCKED"
        assert result.error_type == "PERMISSION_DENIED"
        assert asked == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_session_approval_covers_similar_calls(self):
        bus = EventBus()
        broker = ConfirmationBroker(bus)
        asked = []
        responder(bus, broker, ConfirmationResponse(approved=True, scope=ApprovalScope.SESSION), asked)
        calls = []
        tool = echo_tool(calls, name="sh", param_schema=COMMAND_SCHEMA, confirmation_policy=CommandPolicy())
        dispatcher = dispatcher_for(tool, broker=broker)
        approvals = ApprovalMemory()

        first = await dispatch(dispatcher, "sh", {"command": "git status"}, approvals)
        second = await dispatch(dispatcher, "sh", {"command": "git status --short"}, approvals)
        third = await dispatch(dispatcher, "sh", {"command": "git log"}, approvals)

        assert first.success and second.success and third.success
        assert first.metadata["approval_scope"] == "session"
        assert second.metadata["approval"] == "remembered"
        assert approvals.is_approved("sh", "cmd:sh:git status")
        assert len(asked) == 2
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_once_approval_is_not_remembered(self):
        bus = EventBus()
        broker = ConfirmationBroker(bus)
        asked = []
        responder(bus, broker, ConfirmationResponse(approved=True), asked)
        tool = echo_tool([], confirmation_policy=AlwaysConfirm())
        dispatcher = dispatcher_for(tool, broker=broker)
        approvals = ApprovalMemory()

        await dispatch(dispatcher, "echo", {"text": "a"}, approvals)
        await dispatch(dispatcher, "echo", {"text": "a"}, approvals)

        assert len(asked) == 2
        assert len(approvals) == 0

    @pytest.mark.asyncio
    async def test_no_channel_means_denied(self):
        calls = []
        tool = echo_tool(calls, confirmation_policy=AlwaysConfirm())
        result = await dispatch(dispatcher_for(tool), "echo", {"text": "hi"})
        assert result.error["code"] == "NO_CONFIRMATION_CHANNEL"
        assert calls == []

    @pytest.mark.asyncio
    async def test_read_only_tools_auto_approved(self):
        calls = []
        tool = echo_tool(calls, is_read_only=True, kind=ToolKind.READ, confirmation_policy=AlwaysConfirm())
        result = await dispatch(dispatcher_for(tool), "echo", {"text": "hi"})
        assert result.success
        assert result.output == "hi"

        strict = dispatcher_for(echo_tool([], is_read_only=True, confirmation_policy=AlwaysConfirm()),
                                auto_approve_read_only=False)
        result = await dispatch(strict, "echo", {"text": "hi"})
        assert result.error_type == "PERMISSION_DENIED"


class TestExecution:

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failure(self):
        async def broken(params, ctx):
            raise RuntimeError("disk on fire")

        tool = Tool(name="broken", handler=broken)
        result = await dispatch(dispatcher_for(tool), "broken", {})
        assert not result.success
        assert result.error_type == "EXECUTION_ERROR"
        assert "disk on fire" in result.error_message

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self):
        async def fatal(params, ctx):
            raise FatalError("session lost")

        tool = Tool(name="fatal", handler=fatal)
        with pytest.raises(FatalError):
            await dispatch(dispatcher_for(tool), "fatal", {})

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_handler(self):
        finished = []

        async def slow(params, ctx):
            await asyncio.sleep(10)
            finished.append(True)
            return "done"

        tool = Tool(name="slow", handler=slow)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "user stop")

        result = await dispatch(dispatcher_for(tool), "slow", {}, token=token)

        assert not result.success
        assert result.error["code"] == "CANCELLED"
        assert finished == []

    @pytest.mark.asyncio
    async def test_cancelled_before_start_never_runs(self):
        calls = []
        token = CancellationToken()
        token.cancel()
        result = await dispatch(dispatcher_for(echo_tool(calls)), "echo", {"text": "x"}, token=token)
        assert result.error["code"] == "CANCELLED"
        assert calls == []

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(params, ctx):
            await asyncio.sleep(10)

        tool = Tool(name="slow", handler=slow)
        result = await dispatch(dispatcher_for(tool, timeout=0.01), "slow", {})
        assert result.error_type == "TIMEOUT_ERROR"

    @pytest.mark.asyncio
    async def test_network_tools_are_retried(self):
        calls = []

        async def fetch(params, ctx):
            calls.append(1)
            if len(calls) < 3:
                raise NetworkError("connection reset")
            return "payload"

        async def no_sleep(delay):
            return None

        manager = RetryManager(RetryConfig(max_attempts=3, jitter=False), sleep=no_sleep)
        tool = Tool(name="fetch", handler=fetch, kind=ToolKind.NETWORK)
        result = await dispatch(dispatcher_for(tool, retry_manager=manager), "fetch", {})

        assert result.success
        assert result.output == "payload"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_read_only_results_are_cached(self):
        calls = []
        tool = echo_tool(calls, is_read_only=True, kind=ToolKind.READ)
        dispatcher = dispatcher_for(tool, cache=ResultCache())

        first = await dispatch(dispatcher, "echo", {"text": "hi"})
        second = await dispatch(dispatcher, "echo", {"text": "hi"})

        assert first.output == second.output == "hi"
        assert "cached" not in first.metadata
        assert second.metadata["cached"] is True
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_progress_and_context(self):
        seen = {}
        progress = []

        async def handler(params, ctx):
            seen["session_id"] = ctx.session_id
            seen["tool_call_id"] = ctx.tool_call_id
            ctx.progress("halfway")
            return None

        tool = Tool(name="work", handler=handler)
        result = await dispatch(
            dispatcher_for(tool), "work", {}, on_progress=progress.append, tool_call_id="call_9"
        )

        assert result.success and result.output == ""
        assert seen == {"session_id": "s1", "tool_call_id": "call_9"}
        assert progress == ["halfway"]

    @pytest.mark.asyncio
    async def test_invocation_is_single_use(self):
        calls = []
        invocation = build_invocation(echo_tool(calls), {"text": "once"})
        gate = ConfirmationGate(session_id="s1")

        first = await invocation.execute(CancellationToken(), gate=gate)
        second = await invocation.execute(CancellationToken(), gate=gate)

        assert first.success
        assert second.error["code"] == "INVOCATION_REUSED"
        assert len(calls) == 1
