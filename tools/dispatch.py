"""Tool execution dispatch: lookup -> build -> execute -> remember approval -> cache."""

import logging
from typing import Any, Dict, Optional

from agent.cache import ResultCache
from agent.cancellation import CancellationToken
from agent.confirmation import ConfirmationBroker
from agent.errors import EngineError, ValidationError
from agent.resilience import RetryManager
from config import app_config, retry_settings
from tools._common import ToolResult
from tools.base import ApprovalMemory, ProgressCallback
from tools.invocation import ConfirmationGate, build_invocation
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """Runs tools by name for a session. Never raises for tool failures;
    only asyncio.CancelledError and FatalError propagate."""

    def __init__(
        self,
        registry: ToolRegistry,
        broker: Optional[ConfirmationBroker] = None,
        retry_manager: Optional[RetryManager] = None,
        cache: Optional[ResultCache] = None,
        *,
        timeout: Optional[float] = retry_settings.tool_call_timeout,
        auto_approve_read_only: bool = app_config.auto_approve_read_only,
    ):
        self.registry = registry
        self.broker = broker
        self.retry_manager = retry_manager
        self.cache = cache
        self.timeout = timeout
        self.auto_approve_read_only = auto_approve_read_only

    async def dispatch(
        self,
        name: str,
        params: Optional[Dict[str, Any]],
        *,
        session_id: str,
        approvals: ApprovalMemory,
        cancellation: CancellationToken,
        on_progress: Optional[ProgressCallback] = None,
        tool_call_id: Optional[str] = None,
    ) -> ToolResult:
        tool = self.registry.lookup(name)
        if tool is None:
            return ToolResult.failure(ValidationError(f"Unknown tool: {name}", code="UNKNOWN_TOOL"))

        try:
            invocation = build_invocation(tool, params)
        except EngineError as e:
            return ToolResult.failure(e, tool=name)

        if tool.is_read_only and self.cache is not None:
            cached = self.cache.get_tool_result(name, invocation.params)
            if cached is not None:
                logger.debug(f"Tool cache hit: {name}")
                return ToolResult(
                    success=cached.success,
                    output=cached.output,
                    error=cached.error,
                    metadata={**cached.metadata, "cached": True},
                )

        gate = ConfirmationGate(
            session_id=session_id,
            broker=self.broker,
            approvals=approvals,
            auto_approve_read_only=self.auto_approve_read_only,
        )
        result = await invocation.execute(
            cancellation,
            on_progress,
            gate=gate,
            retry_manager=self.retry_manager,
            timeout=self.timeout,
            tool_call_id=tool_call_id,
        )

        signature = result.metadata.get("approval_signature")
        if result.metadata.get("approval_scope") == "session" and signature:
            approvals.remember(name, signature)

        if result.success and tool.is_read_only and self.cache is not None:
            self.cache.cache_tool_result(name, invocation.params, result)

        logger.info(f"Tool {name}: {'ok' if result.success else result.error_type}")
        return result
