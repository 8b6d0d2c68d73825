"""
Agent event, policy decision data types, and the in-process event bus.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

# Topics published by the confirmation broker
PERMISSION_ASKED = "permission.asked"
PERMISSION_REPLIED = "permission.replied"


@dataclass
class AgentEvent:
    """Event emitted during task execution"""
    type: str  # task_start, step_start, step_end, subtask_end, compaction, task_end
    content: str = ""
    data: Optional[Dict[str, Any]] = None


@dataclass
class PolicyDecision:
    """Confirmation policy decision for a requested operation"""
    require_approval: bool = False
    blocked: bool = False
    reason: str = ""
    risk_level: str = "low"


class EventBus:
    """Minimal publish/subscribe bus. Handlers may be plain functions or
    coroutines; a failing handler is logged and does not affect the publisher
    or the other handlers."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers[topic].remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(topic, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Event handler for '{topic}' failed")
