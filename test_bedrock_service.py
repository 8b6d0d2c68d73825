"""
Tests for bedrock_service.py using a fake bedrock-runtime client.
"""
import io
import json

import pytest
from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from agent import ContextWindowManager, RetryConfig, RetryManager, Task, TaskExecutor, TaskStatus
from agent.errors import NetworkError, OperationTimeoutError
from bedrock_service import BedrockError, BedrockService, classify_bedrock_error

SONNET = "us.anthropic.claude-sonnet-4-5-20250929-v1:0"


def client_error(code: str, message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "InvokeModel")


class FakeRuntime:
    def __init__(self, response=None, error=None):
        self.response = response or {
            "content": [{"type": "text", "text": "Hello from Claude"}],
            "usage": {"input_tokens": 12, "output_tokens": 4},
            "stop_reason": "end_turn",
        }
        self.error = error
        self.requests = []

    def invoke_model(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return {"body": io.BytesIO(json.dumps(self.response).encode("utf-8"))}


class TestErrorClassification:

    def test_throttling_is_retryable_network_error(self):
        error = classify_bedrock_error(client_error("ThrottlingException", "slow down"))
        assert isinstance(error, NetworkError)
        assert error.retryable
        assert error.code == "ThrottlingException"

    def test_model_timeout(self):
        error = classify_bedrock_error(client_error("ModelTimeoutException"))
        assert isinstance(error, OperationTimeoutError)

    def test_bad_request_is_not_retryable(self):
        error = classify_bedrock_error(client_error("ValidationException", "bad body"))
        assert isinstance(error, BedrockError)
        assert not error.retryable
        assert "bad body" in error.message

    def test_expired_credentials(self):
        error = classify_bedrock_error(client_error("ExpiredTokenException"))
        assert isinstance(error, BedrockError)
        assert "expired" in error.message

    def test_transport_errors(self):
        assert isinstance(classify_bedrock_error(ReadTimeoutError(endpoint_url="https://x")), OperationTimeoutError)
        assert isinstance(classify_bedrock_error(EndpointConnectionError(endpoint_url="https://x")), NetworkError)
        no_creds = classify_bedrock_error(NoCredentialsError())
        assert isinstance(no_creds, BedrockError)
        assert no_creds.code == "NoCredentials"


class TestFormatting:

    def test_roles_tool_blocks_and_system(self):
        service = BedrockService(model_id=SONNET, client=FakeRuntime())
        system, messages = service._format_messages([
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "read a.py"},
            {
                "role": "assistant",
                "content": "reading",
                "tool_calls": [{"id": "c1", "name": "read_file", "arguments": {"path": "a.py"}}],
            },
            {"role": "tool", "content": "print(1)", "tool_call_id": "c1"},
            {"role": "user", "content": "now explain"},
        ])

        assert system == "Be brief."
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"][1] == {
            "type": "tool_use", "id": "c1", "name": "read_file", "input": {"path": "a.py"}
        }
        assert messages[2]["content"][0]["type"] == "tool_result"
        assert messages[2]["content"][0]["tool_use_id"] == "c1"
        assert messages[2]["content"][1] == {"type": "text", "text": "now explain"}

    def test_conversation_must_start_with_user(self):
        service = BedrockService(model_id=SONNET, client=FakeRuntime())
        _, messages = service._format_messages([{"role": "assistant", "content": "hi"}])
        assert messages[0]["role"] == "user"
        assert messages[1]["role"] == "assistant"

    def test_empty_text_blocks_replaced(self):
        service = BedrockService(model_id=SONNET, client=FakeRuntime())
        _, messages = service._format_messages([{"role": "user", "content": "   "}])
        assert messages[0]["content"] == [{"type": "text", "text": "(no content)"}]


class TestSend:

    def test_send_parses_response(self):
        runtime = FakeRuntime(response={
            "content": [
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.py"}},
            ],
            "usage": {"input_tokens": 30, "output_tokens": 9},
            "stop_reason": "tool_use",
        })
        service = BedrockService(model_id=SONNET, client=runtime)

        result = service.send(
            [{"role": "system", "content": "ctx"}, {"role": "user", "content": "hi"}],
            {"system": "Be brief.", "max_tokens": 999999},
        )

        assert result["content"] == "Let me look."
        assert result["usage"] == {"input_tokens": 30, "output_tokens": 9}
        assert result["stop_reason"] == "tool_use"
        assert result["tool_uses"] == [{"id": "t1", "name": "read_file", "arguments": {"path": "a.py"}}]

        request = runtime.requests[0]
        body = json.loads(request["body"])
        assert request["modelId"] == SONNET
        assert body["system"] == "Be brief.\n\nctx"
        assert body["max_tokens"] == 64000
        assert body["anthropic_version"] == "bedrock-2023-05-31"

    def test_send_raises_classified_errors(self):
        service = BedrockService(model_id=SONNET, client=FakeRuntime(error=client_error("ThrottlingException")))
        with pytest.raises(NetworkError) as exc_info:
            service.send([{"role": "user", "content": "hi"}])
        assert isinstance(exc_info.value.__cause__, ClientError)

    @pytest.mark.asyncio
    async def test_blocking_client_drives_executor(self):
        runtime = FakeRuntime()
        service = BedrockService(model_id=SONNET, client=runtime)
        context = ContextWindowManager("s1", 200000)
        executor = TaskExecutor(
            service, context, RetryManager(RetryConfig(max_attempts=1)), model_params={"model_id": SONNET}
        )

        outcome = await executor.run(Task("hello"))

        assert outcome.status == TaskStatus.COMPLETED
        assert outcome.response.content == "Hello from Claude"
        assert context.window.token_usage.input == 12
        assert len(runtime.requests) == 1
