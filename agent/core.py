"""
Per-session façade over the task executor.

An AgentSession owns one context window, one approval memory and one
executor. Tasks for a session run one at a time; independent sessions run
fully concurrently because they share no mutable state besides the retry
manager (keyed by operation id) and the confirmation broker (keyed by
request id).
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from config import context_settings, effective_context_limit, model_config

from .cache import HotMessageStore, ResultCache
from .cancellation import CancellationToken
from .confirmation import ConfirmationBroker
from .context import ContextWindowManager
from .errors import FatalError
from .execution import EventCallback, TaskExecutor, TaskOutcome, TaskStatus
from .history import Summarizer
from .plan import StepPlanner, Task, TaskDecomposer
from .resilience import RetryManager

logger = logging.getLogger(__name__)

MAX_OUTCOME_HISTORY = 50


class AgentSession:
    """Runs Tasks for one session id and persists its state after each one."""

    def __init__(
        self,
        session_id: str,
        client: Any,
        retry_manager: RetryManager,
        *,
        broker: Optional[ConfirmationBroker] = None,
        dispatcher: Any = None,
        store: Any = None,
        context: Optional[ContextWindowManager] = None,
        approvals: Any = None,
        planner: Optional[StepPlanner] = None,
        decomposer: Optional[TaskDecomposer] = None,
        summarizer: Optional[Summarizer] = None,
        on_event: Optional[EventCallback] = None,
        model_params: Optional[Dict[str, Any]] = None,
        system_prompt: str = "",
        max_tokens: Optional[int] = None,
    ):
        if not session_id:
            raise FatalError("AgentSession requires a session id")
        # Imported here: tools depends on the agent package
        from tools.base import ApprovalMemory

        self.session_id = session_id
        self.broker = broker
        self.store = store
        self.model_params = dict(model_params or {})
        self.context = context or ContextWindowManager(
            session_id,
            max_tokens or effective_context_limit(self.model_params.get("model_id") or model_config.model_id),
            system_prompt=system_prompt,
            hot_store=HotMessageStore(context_settings.hot_store_max_messages),
            cache=ResultCache(context_settings.result_cache_size, context_settings.result_cache_ttl),
        )
        self.approvals = approvals if approvals is not None else ApprovalMemory()
        self.executor = TaskExecutor(
            client,
            self.context,
            retry_manager,
            dispatcher,
            approvals=self.approvals,
            planner=planner,
            decomposer=decomposer,
            summarizer=summarizer,
            on_event=on_event,
            model_params=self.model_params,
        )
        self.outcomes: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._cancellation: Optional[CancellationToken] = None
        self._current_task: Optional[Task] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def current_task(self) -> Optional[Task]:
        return self._current_task

    # ------------------------------------------------------------------
    # Running tasks
    # ------------------------------------------------------------------

    async def run(self, task: Task) -> TaskOutcome:
        """Run a task to its terminal state. A second call while a task is
        running waits for it to finish."""
        async with self._lock:
            token = CancellationToken()
            self._cancellation = token
            self._current_task = task
            try:
                outcome = await self.executor.run(task, token)
            finally:
                self._cancellation = None
                self._current_task = None
                if self.broker is not None and token.cancelled:
                    self.broker.cancel_all(self.session_id)

            self._record(outcome)
            if outcome.status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                self.save()
            return outcome

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Cancel the running task and deny its pending confirmations.
        Returns False if no task was running."""
        token = self._cancellation
        if self.broker is not None:
            self.broker.cancel_all(self.session_id)
        if token is None:
            return False
        logger.info(f"Cancelling task in session {self.session_id}: {reason}")
        return token.cancel(reason)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "context": self.context.snapshot(),
            "approvals": self.approvals.to_list(),
            "outcomes": list(self.outcomes),
            "saved_at": time.time(),
        }

    def save(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.session_id, self.snapshot())
        except Exception as e:
            logger.warning(f"Failed to save session {self.session_id}: {e}")

    def load(self) -> bool:
        """Restore state from the store. Returns False if nothing was stored."""
        if self.store is None:
            return False
        data = self.store.load(self.session_id)
        if not data:
            return False
        if data.get("session_id") not in (None, self.session_id):
            raise FatalError(
                f"Stored snapshot belongs to session {data.get('session_id')}, not {self.session_id}"
            )
        self.context.restore(data.get("context") or {})
        self.approvals.clear()
        for tool_name, signature in data.get("approvals") or []:
            self.approvals.remember(tool_name, signature)
        self.outcomes = list(data.get("outcomes") or [])[-MAX_OUTCOME_HISTORY:]
        logger.info(f"Session {self.session_id} restored ({len(self.context.messages)} messages)")
        return True

    def _record(self, outcome: TaskOutcome) -> None:
        self.outcomes.append(outcome.to_dict())
        if len(self.outcomes) > MAX_OUTCOME_HISTORY:
            del self.outcomes[: len(self.outcomes) - MAX_OUTCOME_HISTORY]
