"""
Configuration module for the execution engine.
Handles environment variables, model limits, and engine settings
(retry, circuit breaker, context window).
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    summary_model_id: str = os.getenv("SUMMARY_MODEL_ID", "us.anthropic.claude-haiku-4-5-20251001-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Bedrock Codex Engine"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    session_dir: str = os.getenv(
        "SESSION_DIR", os.path.join(os.path.expanduser("~"), ".bedrock-codex", "engine-sessions")
    )
    # Read-only tools skip the confirmation handshake entirely
    auto_approve_read_only: bool = _env_bool("AUTO_APPROVE_READS", "true")
    # Destructive shell commands are refused instead of prompting
    block_destructive_commands: bool = _env_bool("BLOCK_DESTRUCTIVE_COMMANDS", "true")


@dataclass
class RetrySettings:
    """Retry/backoff defaults. Durations are in seconds."""
    max_attempts: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    initial_delay: float = float(os.getenv("RETRY_INITIAL_DELAY", "1.0"))
    max_delay: float = float(os.getenv("RETRY_MAX_DELAY", "30.0"))
    backoff_factor: float = float(os.getenv("RETRY_BACKOFF_FACTOR", "2.0"))
    jitter: bool = _env_bool("RETRY_JITTER", "true")
    model_call_timeout: float = float(os.getenv("MODEL_CALL_TIMEOUT", "120"))
    tool_call_timeout: float = float(os.getenv("TOOL_CALL_TIMEOUT", "300"))


@dataclass
class CircuitSettings:
    """Circuit breaker defaults"""
    failure_threshold: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    recovery_timeout: float = float(os.getenv("CIRCUIT_RECOVERY_TIMEOUT", "60"))


@dataclass
class ContextSettings:
    """Context window and cache defaults"""
    # 0 means "use the context window of the configured model"
    max_tokens: int = int(os.getenv("CONTEXT_MAX_TOKENS", "0"))
    compaction_threshold: float = float(os.getenv("COMPACTION_THRESHOLD", "0.8"))
    keep_recent: int = int(os.getenv("COMPACTION_KEEP_RECENT", "6"))
    hot_store_max_messages: int = int(os.getenv("HOT_STORE_MAX_MESSAGES", "1000"))
    result_cache_size: int = int(os.getenv("RESULT_CACHE_SIZE", "100"))
    result_cache_ttl: float = float(os.getenv("RESULT_CACHE_TTL", "300"))


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Only the fields the engine needs for token budgeting.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-6-v1",
        "base_id": "anthropic.claude-opus-4-6-v1",
        "name": "Claude Opus 4.6",
        "context_window": 200000,
        "max_output_tokens": 128000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "base_id": "anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "base_id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": False,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()
retry_settings = RetrySettings()
circuit_settings = CircuitSettings()
context_settings = ContextSettings()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. Unknown model IDs get a minimal
    fallback dict, so callers should use .get(key, default)."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": False,
    }


def get_model_name(model_id: str) -> str:
    model = get_model_by_id(model_id)
    return model["name"] if model else model_id


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", 200000)


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def effective_context_limit(model_id: Optional[str] = None) -> int:
    """Token budget for the context window: explicit override, else the model's window."""
    if context_settings.max_tokens > 0:
        return context_settings.max_tokens
    return get_context_window(model_id or model_config.model_id)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
