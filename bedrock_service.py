"""
Amazon Bedrock service module.
Model-call client for the execution engine: formats engine messages for the
Anthropic Messages API on Bedrock, invokes the model and maps botocore
failures onto the engine's error taxonomy so the retry layer can classify them.
"""

import boto3
import json
import logging
from typing import List, Dict, Optional, Any
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from dataclasses import dataclass
from config import (
    aws_config,
    model_config,
    get_credentials_info,
    get_model_config,
    get_max_output_tokens,
    requires_inference_profile,
)

from agent.errors import EngineError, ExecutionError, NetworkError, OperationTimeoutError


logger = logging.getLogger(__name__)


class BedrockError(ExecutionError):
    """Non-transient Bedrock failure (bad request, credentials, access)."""
    default_retryable = False


# Error codes worth another attempt after a backoff
THROTTLING_CODES = frozenset({
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceUnavailableException",
    "InternalServerException",
    "ModelNotReadyException",
    "ModelStreamErrorException",
})
TIMEOUT_CODES = frozenset({"ModelTimeoutException", "RequestTimeout", "RequestTimeoutException"})
CREDENTIAL_CODES = frozenset({
    "ExpiredTokenException",
    "InvalidSignatureException",
    "UnrecognizedClientException",
})


def classify_bedrock_error(exc: Exception) -> EngineError:
    """Map a boto3/botocore exception onto the engine error taxonomy."""
    if isinstance(exc, EngineError):
        return exc
    if isinstance(exc, ClientError):
        error_code = exc.response.get("Error", {}).get("Code", "Unknown")
        error_message = exc.response.get("Error", {}).get("Message", str(exc))
        context = {"aws_code": error_code}
        if error_code in THROTTLING_CODES:
            return NetworkError(f"Bedrock unavailable: {error_message}", code=error_code, context=context)
        if error_code in TIMEOUT_CODES:
            return OperationTimeoutError(f"Bedrock timed out: {error_message}", code=error_code, context=context)
        if error_code in CREDENTIAL_CODES:
            return BedrockError("AWS credentials expired. Please refresh.", code=error_code, context=context)
        return BedrockError(f"Bedrock API error: {error_message}", code=error_code, context=context)
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError)):
        return OperationTimeoutError(f"Bedrock request timed out: {exc}")
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError)):
        return NetworkError(f"Bedrock connection failed: {exc}")
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return BedrockError("AWS credentials not configured.", code="NoCredentials")
    return EngineError.from_exception(exc)


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 16000
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None

    # Throughput settings
    throughput_mode: str = "cross-region"

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "GenerationConfig":
        return cls(
            max_tokens=int(params.get("max_tokens", model_config.max_tokens)),
            temperature=params.get("temperature", model_config.temperature),
            top_p=params.get("top_p"),
            stop_sequences=params.get("stop_sequences"),
            throughput_mode=params.get("throughput_mode", "cross-region"),
        )


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    Implements the engine's model-call contract: send(messages, model_params).
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        client: Any = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region

        self.client = client or self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            logger.debug(get_credentials_info())
            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Get the appropriate model identifier based on throughput mode"""
        if config.throughput_mode == "cross-region":
            if model_id.startswith(("us.", "eu.", "ap.")):
                return model_id
            elif requires_inference_profile(model_id):
                region_prefix = "us" if self.region.startswith("us-") else "eu" if self.region.startswith("eu-") else "us"
                return f"{region_prefix}.{model_id}"

        model_config_data = get_model_config(model_id)
        return model_config_data.get("base_id", model_id)

    # ------------------------------------------------------------------
    # Request formatting
    # ------------------------------------------------------------------

    @staticmethod
    def _to_blocks(content: Any) -> List[Dict[str, Any]]:
        if isinstance(content, list):
            return [b if isinstance(b, dict) else {"type": "text", "text": str(b)} for b in content]
        if isinstance(content, str):
            return [{"type": "text", "text": content}]
        if content is None:
            return []
        return [{"type": "text", "text": json.dumps(content, default=str)}]

    def _format_messages(self, messages: List[Dict[str, Any]]) -> tuple:
        """Convert engine messages to (system_prompt, anthropic_messages).

        System messages are folded into the system prompt, tool messages become
        tool_result blocks, assistant tool calls become tool_use blocks, and
        consecutive same-role messages are merged so roles alternate.
        """
        system_parts: List[str] = []
        formatted: List[Dict[str, Any]] = []

        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content")
            if role == "system":
                if isinstance(content, str) and content.strip():
                    system_parts.append(content)
                continue
            if role == "tool":
                role = "user"
                blocks = [{
                    "type": "tool_result",
                    "tool_use_id": msg.get("tool_call_id", ""),
                    "content": content if isinstance(content, str) else json.dumps(content, default=str),
                }]
            else:
                blocks = self._to_blocks(content)
                for call in msg.get("tool_calls") or []:
                    blocks.append({
                        "type": "tool_use",
                        "id": call.get("id", ""),
                        "name": call.get("name", ""),
                        "input": call.get("arguments") or {},
                    })
            # API requires non-empty text blocks
            blocks = [
                b for b in blocks
                if not (b.get("type") == "text" and not (b.get("text") or "").strip())
            ] or [{"type": "text", "text": "(no content)"}]

            if formatted and formatted[-1]["role"] == role:
                formatted[-1]["content"].extend(blocks)
            else:
                formatted.append({"role": role, "content": blocks})

        if formatted and formatted[0]["role"] != "user":
            formatted.insert(0, {"role": "user", "content": [{"type": "text", "text": "(continue)"}]})
        return "\n\n".join(system_parts), formatted

    def _format_request_body(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None,
    ) -> Dict[str, Any]:
        """Format the request body (Anthropic-only since all models are Claude)"""
        derived_system, formatted_messages = self._format_messages(messages)
        system = "\n\n".join(p for p in (system_prompt, derived_system) if p)

        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": min(config.max_tokens, get_max_output_tokens(model_id)),
            "messages": formatted_messages,
        }
        if config.temperature is not None:
            body["temperature"] = config.temperature
        elif config.top_p is not None:
            body["top_p"] = config.top_p
        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if system:
            body["system"] = system
        if tools:
            body["tools"] = tools
        return body

    def _parse_response(self, response_body: Dict[str, Any]) -> Dict[str, Any]:
        """Parse the Anthropic response body into {content, usage, stop_reason, tool_uses}"""
        try:
            content = ""
            tool_uses = []
            for block in response_body.get("content", []):
                block_type = block.get("type", "")
                if block_type == "text":
                    content += block.get("text", "")
                elif block_type == "tool_use":
                    tool_uses.append({
                        "id": block.get("id", ""),
                        "name": block.get("name", ""),
                        "arguments": block.get("input", {}),
                    })
            usage = response_body.get("usage", {})
        except (KeyError, IndexError, AttributeError) as e:
            logger.error(f"Error parsing response: {e}")
            raise BedrockError(f"Failed to parse model response: {e}")

        return {
            "content": content,
            "usage": {
                "input_tokens": usage.get("input_tokens", 0),
                "output_tokens": usage.get("output_tokens", 0),
            },
            "stop_reason": response_body.get("stop_reason"),
            "tool_uses": tool_uses,
        }

    # ------------------------------------------------------------------
    # Model-call contract
    # ------------------------------------------------------------------

    def send(self, messages: List[Dict[str, Any]], model_params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Invoke the model. Blocking; the engine runs it in an executor.
        Raises classified EngineErrors so the retry layer can decide.
        """
        params = dict(model_params or {})
        current_model = params.get("model_id") or self.model_id
        gen_config = GenerationConfig.from_params(params)

        try:
            model_identifier = self._get_model_identifier(current_model, gen_config)
            request_body = self._format_request_body(
                messages, params.get("system"), current_model, gen_config, tools=params.get("tools")
            )

            logger.info(f"Invoking model: {model_identifier}")

            response = self.client.invoke_model(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json",
            )

            response_body = json.loads(response["body"].read())
        except EngineError:
            raise
        except Exception as e:
            error = classify_bedrock_error(e)
            logger.error(f"Bedrock API error: {error.code} - {error.message}")
            raise error from e

        return self._parse_response(response_body)
