"""
Agent package - execution and resilience engine.

This package contains the engine core split into logical modules:
- errors: Error taxonomy shared by every layer
- cancellation: Cancellation tokens threaded through suspension points
- events: AgentEvent, PolicyDecision and the in-process event bus
- resilience: Retry with backoff and per-operation circuit breaker
- confirmation: Approval request/response correlation
- history: Message model, token accounting and summarizers
- cache: Hot message store and scored TTL result cache
- context: Context window manager and compaction
- plan: Tasks, steps and planning policies
- execution: Task executor (simple / parallel / steering)
- core: AgentSession per-session façade
"""

from .errors import (
    ErrorType,
    EngineError,
    ValidationError,
    PermissionDeniedError,
    ExecutionError,
    CancellationError,
    OperationTimeoutError,
    NetworkError,
    CircuitOpenError,
    FatalError,
)
from .cancellation import CancellationToken
from .events import AgentEvent, PolicyDecision, EventBus, PERMISSION_ASKED, PERMISSION_REPLIED
from .resilience import (
    RetryConfig,
    CircuitBreakerConfig,
    RetryManager,
    RetryState,
    CircuitState,
    CircuitStatus,
    retry,
)
from .confirmation import (
    ConfirmationBroker,
    ConfirmationRequest,
    ConfirmationResponse,
    RiskLevel,
    ApprovalScope,
)
from .history import (
    Message,
    ToolCall,
    TokenAccountant,
    Summarizer,
    SummaryResult,
    HeuristicSummarizer,
    ModelSummarizer,
    send_to_model,
)
from .cache import HotMessageStore, ResultCache
from .context import ContextWindowManager, ContextWindow, CompactionSummary, CompactionResult
from .plan import (
    Task,
    TaskKind,
    ExecutionStep,
    StepKind,
    StepStatus,
    StepPlanner,
    TaskDecomposer,
    DefaultStepPlanner,
    DefaultTaskDecomposer,
    PlanStepPlanner,
)
from .execution import TaskExecutor, Response, TaskOutcome, TaskStatus
from .core import AgentSession

__all__ = [
    # Errors
    "ErrorType",
    "EngineError",
    "ValidationError",
    "PermissionDeniedError",
    "ExecutionError",
    "CancellationError",
    "OperationTimeoutError",
    "NetworkError",
    "CircuitOpenError",
    "FatalError",

    # Cancellation and events
    "CancellationToken",
    "AgentEvent",
    "PolicyDecision",
    "EventBus",
    "PERMISSION_ASKED",
    "PERMISSION_REPLIED",

    # Resilience
    "RetryConfig",
    "CircuitBreakerConfig",
    "RetryManager",
    "RetryState",
    "CircuitState",
    "CircuitStatus",
    "retry",

    # Confirmation
    "ConfirmationBroker",
    "ConfirmationRequest",
    "ConfirmationResponse",
    "RiskLevel",
    "ApprovalScope",

    # Context
    "Message",
    "ToolCall",
    "TokenAccountant",
    "Summarizer",
    "SummaryResult",
    "HeuristicSummarizer",
    "ModelSummarizer",
    "send_to_model",
    "HotMessageStore",
    "ResultCache",
    "ContextWindowManager",
    "ContextWindow",
    "CompactionSummary",
    "CompactionResult",

    # Tasks
    "Task",
    "TaskKind",
    "ExecutionStep",
    "StepKind",
    "StepStatus",
    "StepPlanner",
    "TaskDecomposer",
    "DefaultStepPlanner",
    "DefaultTaskDecomposer",
    "PlanStepPlanner",
    "TaskExecutor",
    "Response",
    "TaskOutcome",
    "TaskStatus",
    "AgentSession",
]
