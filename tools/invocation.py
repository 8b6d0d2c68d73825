"""
Tool invocation lifecycle: validate -> confirm -> execute.

build_invocation() rejects bad parameters at the boundary, so everything past
it only sees validated data. ToolInvocation.execute() never raises for tool
failures; it returns a ToolResult carrying the classified error. Only
asyncio.CancelledError and FatalError propagate.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agent.cancellation import CancellationToken
from agent.confirmation import ApprovalScope, ConfirmationBroker, RiskLevel
from agent.errors import (
    CancellationError,
    ExecutionError,
    FatalError,
    OperationTimeoutError,
    PermissionDeniedError,
)
from agent.resilience import RetryManager
from config import app_config
from tools._common import ToolResult
from tools.base import ApprovalMemory, ProgressCallback, Tool, ToolCallContext, ToolKind
from tools.schemas import validate_params

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationGate:
    """Everything an invocation needs to ask for approval within a session."""
    session_id: str
    broker: Optional[ConfirmationBroker] = None
    approvals: ApprovalMemory = field(default_factory=ApprovalMemory)
    auto_approve_read_only: bool = app_config.auto_approve_read_only


def build_invocation(tool: Tool, raw_params: Any) -> "ToolInvocation":
    """Validate parameters and bind them to the tool. Raises ValidationError."""
    params = validate_params(tool, raw_params)
    affected: List[str] = []
    for key in tool.resource_keys:
        value = params.get(key)
        if isinstance(value, (list, tuple)):
            affected.extend(str(v) for v in value)
        elif value not in (None, ""):
            affected.append(str(value))
    return ToolInvocation(tool=tool, params=params, affected_resources=affected)


class ToolInvocation:
    """Single-use binding of validated parameters to a tool."""

    def __init__(self, tool: Tool, params: Dict[str, Any], affected_resources: Optional[List[str]] = None):
        self.tool = tool
        self.params = params
        self.affected_resources = list(affected_resources or [])
        self._used = False

    @property
    def tool_name(self) -> str:
        return self.tool.name

    async def execute(
        self,
        cancellation: CancellationToken,
        on_progress: Optional[ProgressCallback] = None,
        *,
        gate: Optional[ConfirmationGate] = None,
        retry_manager: Optional[RetryManager] = None,
        timeout: Optional[float] = None,
        tool_call_id: Optional[str] = None,
    ) -> ToolResult:
        if self._used:
            return ToolResult.failure(ExecutionError(
                f"Invocation of {self.tool.name} was already executed", code="INVOCATION_REUSED", retryable=False
            ))
        self._used = True

        metadata: Dict[str, Any] = {"tool": self.tool.name}
        if self.affected_resources:
            metadata["affected_resources"] = list(self.affected_resources)

        try:
            cancellation.raise_if_cancelled()
            approval = await self._confirm(cancellation, gate)
            metadata.update(approval)

            # Before I/O
            cancellation.raise_if_cancelled()
            context = ToolCallContext(
                session_id=gate.session_id if gate else "",
                cancellation=cancellation,
                on_progress=on_progress,
                tool_call_id=tool_call_id,
            )
            raw = await self._run(context, cancellation, retry_manager, timeout)

            # After I/O
            cancellation.raise_if_cancelled()
            result = self._normalize(raw)
            result.metadata = {**metadata, **result.metadata}

            # Before returning
            cancellation.raise_if_cancelled()
            return result
        except asyncio.CancelledError:
            raise
        except FatalError:
            raise
        except Exception as e:
            if not isinstance(e, (CancellationError, PermissionDeniedError)):
                logger.warning(f"Tool {self.tool.name} failed: {e}")
            return ToolResult.failure(e, **metadata)

    # ------------------------------------------------------------------

    async def _confirm(self, cancellation: CancellationToken, gate: Optional[ConfirmationGate]) -> Dict[str, Any]:
        """Return approval metadata, or raise PermissionDeniedError."""
        policy = self.tool.confirmation_policy
        decision = policy.evaluate(self.tool.name, self.params)
        if decision.blocked:
            raise PermissionDeniedError(
                decision.reason or f"{self.tool.name} blocked by policy",
                code="BLOCKED",
                context={"tool": self.tool.name},
            )
        if not decision.require_approval:
            return {}
        if self.tool.is_read_only and (gate is None or gate.auto_approve_read_only):
            return {}

        signature = policy.signature(self.tool.name, self.params)
        if gate is not None and gate.approvals.is_approved(self.tool.name, signature):
            logger.debug(f"{self.tool.name} previously approved for session ({signature})")
            return {"approval": "remembered", "approval_signature": signature}

        if gate is None or gate.broker is None:
            raise PermissionDeniedError(
                f"{self.tool.name} requires approval but no confirmation channel is available",
                code="NO_CONFIRMATION_CHANNEL",
            )

        response = await gate.broker.request(
            gate.session_id,
            self.tool.name,
            decision.reason or f"Run {self.tool.name}",
            self.params,
            RiskLevel(decision.risk_level),
            cancellation=cancellation,
        )
        # A cancelled request comes back denied; report it as a cancellation
        cancellation.raise_if_cancelled()
        if not response.approved:
            message = f"User denied {self.tool.name}"
            if response.feedback:
                message += f": {response.feedback}"
            raise PermissionDeniedError(message, context={"feedback": response.feedback})

        approval: Dict[str, Any] = {"approval": "granted"}
        if response.scope == ApprovalScope.SESSION or response.remember:
            approval["approval_scope"] = ApprovalScope.SESSION.value
            approval["approval_signature"] = signature
        if response.target_mode:
            approval["target_mode"] = response.target_mode
        return approval

    async def _run(
        self,
        context: ToolCallContext,
        cancellation: CancellationToken,
        retry_manager: Optional[RetryManager],
        timeout: Optional[float],
    ) -> Any:
        def call():
            return self.tool.execute(self.params, context)

        if self.tool.kind == ToolKind.NETWORK and retry_manager is not None:
            op_id = f"tool:{self.tool.name}"
            if timeout:
                return await retry_manager.execute_with_timeout(call, timeout, op_id, cancellation=cancellation)
            return await retry_manager.execute(call, op_id, cancellation=cancellation)

        if timeout:
            try:
                return await cancellation.run(asyncio.wait_for(call(), timeout=timeout))
            except asyncio.TimeoutError:
                raise OperationTimeoutError(f"{self.tool.name} timed out after {timeout}s")
        return await cancellation.run(call())

    @staticmethod
    def _normalize(raw: Any) -> ToolResult:
        if isinstance(raw, ToolResult):
            return raw
        if raw is None:
            return ToolResult.ok("")
        return ToolResult.ok(raw)
