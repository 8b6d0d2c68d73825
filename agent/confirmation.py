"""
Confirmation broker: correlates an approval request raised by a tool
invocation with a response delivered later by a user or automation policy.

Each request gets a future in the pending table. resolve(), cancel() and
cancel_all() remove the entry before completing the future, so a request id
is completed at most once and late or duplicate calls are no-ops.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .cancellation import CancellationToken
from .errors import FatalError
from .events import EventBus, PERMISSION_ASKED, PERMISSION_REPLIED

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalScope(str, Enum):
    ONCE = "once"
    SESSION = "session"


@dataclass
class ConfirmationRequest:
    id: str
    session_id: str
    tool_name: str
    risk_level: RiskLevel
    description: str
    args: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data


@dataclass
class ConfirmationResponse:
    approved: bool
    scope: ApprovalScope = ApprovalScope.ONCE
    remember: bool = False
    target_mode: Optional[str] = None
    feedback: Optional[str] = None

    @classmethod
    def denied(cls, feedback: Optional[str] = None) -> "ConfirmationResponse":
        return cls(approved=False, feedback=feedback)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["scope"] = self.scope.value
        return data


@dataclass
class _Pending:
    request: ConfirmationRequest
    future: "asyncio.Future[ConfirmationResponse]"


class ConfirmationBroker:
    """Pending-request table plus one future per request id."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus
        self._pending: Dict[str, _Pending] = {}
        self._publishing: Set["asyncio.Task[None]"] = set()

    async def request(
        self,
        session_id: str,
        tool_name: str,
        description: str,
        args: Optional[Dict[str, Any]] = None,
        risk_level: RiskLevel = RiskLevel.MEDIUM,
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> ConfirmationResponse:
        """Register a request, publish permission.asked and wait for the answer.

        Cancellation of the token resolves the request as denied.
        """
        if not session_id:
            raise FatalError("Confirmation requested without a session id")

        request_id = self._new_id()
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[ConfirmationResponse]" = loop.create_future()
        request = ConfirmationRequest(
            id=request_id,
            session_id=session_id,
            tool_name=tool_name,
            risk_level=RiskLevel(risk_level),
            description=description,
            args=dict(args or {}),
        )
        self._pending[request_id] = _Pending(request=request, future=future)
        logger.info(f"Confirmation {request_id} requested for {tool_name} (session {session_id})")

        unregister = None
        if cancellation is not None:
            unregister = cancellation.add_callback(lambda _reason: self.cancel(request_id))

        try:
            # Subscribers run in the background so a slow responder never
            # holds the caller once the request is resolved or cancelled.
            self._publish(PERMISSION_ASKED, request.to_dict())
            # shield: a cancelled waiter must not cancel the shared future
            return await asyncio.shield(future)
        finally:
            if unregister is not None:
                unregister()
            entry = self._pending.get(request_id)
            if entry is not None and entry.future is future:
                del self._pending[request_id]
                if not future.done():
                    future.cancel()

    def resolve(self, request_id: str, response: ConfirmationResponse) -> bool:
        """Deliver a response. Returns False (and does nothing) if the id is
        unknown, already resolved, or cancelled."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            logger.debug(f"Ignoring response for unknown confirmation {request_id}")
            return False
        if entry.future.done():
            return False
        entry.future.set_result(response)
        logger.info(
            f"Confirmation {request_id} {'approved' if response.approved else 'denied'} "
            f"(scope={response.scope.value})"
        )
        self._announce(entry.request, response)
        return True

    def cancel(self, request_id: str, feedback: str = "cancelled") -> bool:
        """Resolve one request as denied."""
        return self.resolve(request_id, ConfirmationResponse.denied(feedback))

    def cancel_all(self, session_id: str) -> int:
        """Deny every outstanding request of a session. Returns how many were cancelled."""
        ids = [rid for rid, entry in self._pending.items() if entry.request.session_id == session_id]
        cancelled = sum(1 for rid in ids if self.cancel(rid, "session cancelled"))
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending confirmation(s) for session {session_id}")
        return cancelled

    def pending(self, session_id: Optional[str] = None) -> List[ConfirmationRequest]:
        return [
            entry.request for entry in self._pending.values()
            if session_id is None or entry.request.session_id == session_id
        ]

    def get(self, request_id: str) -> Optional[ConfirmationRequest]:
        entry = self._pending.get(request_id)
        return entry.request if entry else None

    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        while True:
            request_id = secrets.token_hex(6)
            if request_id not in self._pending:
                return request_id

    def _announce(self, request: ConfirmationRequest, response: ConfirmationResponse) -> None:
        if self.event_bus is None:
            return
        payload = {
            "id": request.id,
            "session_id": request.session_id,
            "tool_name": request.tool_name,
            "response": response.to_dict(),
        }
        self._publish(PERMISSION_REPLIED, payload)

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, {topic} for {payload.get('id')} not published")
            return
        task = loop.create_task(self.event_bus.publish(topic, payload))
        self._publishing.add(task)
        task.add_done_callback(lambda t: self._publish_done(topic, t))

    def _publish_done(self, topic: str, task: "asyncio.Task[None]") -> None:
        self._publishing.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Failed to publish {topic}: {exc}")
