"""
Tool invocation layer for the execution engine.
Each tool is an immutable descriptor with a JSON Schema for its parameters,
a confirmation policy and an async handler.
"""

from tools._common import ToolResult  # noqa: F401
from tools.base import (  # noqa: F401
    Tool,
    ToolKind,
    ToolCallContext,
    ConfirmationPolicy,
    NeverConfirm,
    AlwaysConfirm,
    CommandPolicy,
    FileExtensionPolicy,
    ApprovalMemory,
    DESTRUCTIVE_PATTERNS,
    SHARED_IMPACT_PATTERNS,
)
from tools.schemas import validate_params, tool_definition, check_schema  # noqa: F401
from tools.registry import ToolRegistry  # noqa: F401
from tools.invocation import ToolInvocation, ConfirmationGate, build_invocation  # noqa: F401
from tools.dispatch import ToolDispatcher  # noqa: F401
