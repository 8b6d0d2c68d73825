"""
Task executor: sequences model, tool and sub-agent steps for one session.

Task state: pending -> running -> completed | failed | cancelled.
- simple:   one model call produces the Response.
- parallel: decomposed into independent sub-tasks run concurrently; failed
            sub-tasks are recorded without aborting their siblings.
- steering: planned steps run strictly in order; the first failing step
            fails the Task and the partial output is kept.

Every model call goes through the RetryManager and is preceded by a
compaction check. Tool steps go through the ToolDispatcher, which handles
validation and confirmation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import context_settings, retry_settings

from .cancellation import CancellationToken
from .context import ContextWindowManager
from .errors import (
    CancellationError,
    EngineError,
    ErrorType,
    ExecutionError,
    FatalError,
    NetworkError,
    OperationTimeoutError,
    PermissionDeniedError,
    ValidationError,
)
from .events import AgentEvent
from .history import HeuristicSummarizer, Message, Summarizer, ToolCall, send_to_model
from .plan import (
    DefaultStepPlanner,
    DefaultTaskDecomposer,
    ExecutionStep,
    StepKind,
    StepPlanner,
    StepStatus,
    Task,
    TaskDecomposer,
    TaskKind,
)
from .resilience import RetryManager

if TYPE_CHECKING:
    from tools.base import ApprovalMemory
    from tools.dispatch import ToolDispatcher

logger = logging.getLogger(__name__)

EventCallback = Callable[[AgentEvent], Awaitable[None]]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Response:
    task_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "content": self.content, "metadata": self.metadata}


@dataclass
class TaskOutcome:
    """Terminal record of a Task: the only externally observable result."""
    task_id: str
    status: TaskStatus
    response: Optional[Response] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "response": self.response.to_dict() if self.response else None,
            "error": self.error,
        }


class _TaskAborted(Exception):
    """Internal: a task ended early with a partial response."""

    def __init__(self, status: TaskStatus, response: Response, error: EngineError):
        super().__init__(error.message)
        self.status = status
        self.response = response
        self.error = error


class TaskExecutor:
    """Runs Tasks against one session's context window.

    Not reentrant: the owning AgentSession serializes run() calls.
    """

    def __init__(
        self,
        client: Any,
        context: ContextWindowManager,
        retry_manager: RetryManager,
        dispatcher: Optional["ToolDispatcher"] = None,
        *,
        approvals: Optional["ApprovalMemory"] = None,
        planner: Optional[StepPlanner] = None,
        decomposer: Optional[TaskDecomposer] = None,
        summarizer: Optional[Summarizer] = None,
        on_event: Optional[EventCallback] = None,
        model_params: Optional[Dict[str, Any]] = None,
        keep_recent: int = context_settings.keep_recent,
        compaction_threshold: float = context_settings.compaction_threshold,
        model_timeout: Optional[float] = retry_settings.model_call_timeout,
    ):
        self.client = client
        self.context = context
        self.retry_manager = retry_manager
        self.dispatcher = dispatcher
        self.approvals = approvals
        self.planner = planner or DefaultStepPlanner()
        self.decomposer = decomposer or DefaultTaskDecomposer()
        self.summarizer = summarizer or HeuristicSummarizer()
        self.on_event = on_event
        self.model_params = dict(model_params or {})
        self.keep_recent = keep_recent
        self.compaction_threshold = compaction_threshold
        self.model_timeout = model_timeout
        self._usage: Dict[str, int] = {"input_tokens": 0, "output_tokens": 0}

    @property
    def session_id(self) -> str:
        return self.context.session_id

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, task: Task, cancellation: Optional[CancellationToken] = None) -> TaskOutcome:
        cancellation = cancellation or CancellationToken()
        self._usage = {"input_tokens": 0, "output_tokens": 0}
        logger.info(f"Task {task.id} ({task.kind.value}) running")
        await self._emit("task_start", task.prompt[:200], {"task_id": task.id, "kind": task.kind.value})

        try:
            cancellation.raise_if_cancelled()
            if task.kind == TaskKind.SIMPLE:
                response = await self._execute_simple(task, cancellation)
            elif task.kind == TaskKind.PARALLEL:
                response = await self._execute_parallel(task, cancellation)
            elif task.kind == TaskKind.STEERING:
                response = await self._execute_steering(task, cancellation)
            else:
                raise ExecutionError(f"Unknown task kind: {task.kind}", retryable=False)
            response.metadata["usage"] = dict(self._usage)
            outcome = TaskOutcome(task_id=task.id, status=TaskStatus.COMPLETED, response=response)
        except _TaskAborted as aborted:
            aborted.response.metadata["usage"] = dict(self._usage)
            outcome = TaskOutcome(
                task_id=task.id,
                status=aborted.status,
                response=aborted.response,
                error=aborted.error.to_dict(),
            )
        except CancellationError as e:
            outcome = TaskOutcome(task_id=task.id, status=TaskStatus.CANCELLED, error=e.to_dict())
        except EngineError as e:
            outcome = TaskOutcome(task_id=task.id, status=TaskStatus.FAILED, error=e.to_dict())
        except Exception as e:
            logger.exception(f"Task {task.id} raised an unclassified error")
            error = EngineError.from_exception(e)
            outcome = TaskOutcome(task_id=task.id, status=TaskStatus.FAILED, error=error.to_dict())

        if outcome.status == TaskStatus.FAILED:
            logger.warning(f"Task {task.id} failed: {outcome.error.get('message') if outcome.error else ''}")
        else:
            logger.info(f"Task {task.id} {outcome.status.value}")
        await self._emit("task_end", outcome.status.value, outcome.to_dict())
        return outcome

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _execute_simple(self, task: Task, cancellation: CancellationToken) -> Response:
        content = await self._model_step(task.prompt, cancellation)
        metadata: Dict[str, Any] = {"executionMode": "simple", "taskType": task.kind.value}
        if task.parent_id:
            metadata["parentId"] = task.parent_id
        return Response(task_id=task.id, content=content, metadata=metadata)

    async def _execute_parallel(self, task: Task, cancellation: CancellationToken) -> Response:
        sub_tasks = self.decomposer.decompose(task)
        await self._maybe_compact(cancellation)
        # Sub-tasks share one snapshot of the window and do not write to it
        # while in flight; results are appended once all have settled.
        base_messages, _ = self.context.get_formatted()

        async def _run_sub(sub: Task) -> Tuple[Task, Optional[str], Optional[EngineError]]:
            try:
                content = await self._call_model(
                    base_messages + [{"role": "user", "content": sub.prompt}], cancellation
                )
            except (CancellationError, FatalError):
                raise
            except EngineError as e:
                await self._emit("subtask_end", "failed", {"task_id": task.id, "sub_task_id": sub.id})
                return sub, None, e
            await self._emit("subtask_end", "completed", {"task_id": task.id, "sub_task_id": sub.id})
            return sub, content, None

        settled = await asyncio.gather(*(_run_sub(s) for s in sub_tasks), return_exceptions=True)

        results: Dict[str, Dict[str, Any]] = {}
        contents: List[str] = []
        failed = 0
        cancelled: Optional[CancellationError] = None
        for sub, item in zip(sub_tasks, settled):
            if isinstance(item, asyncio.CancelledError):
                raise item
            if isinstance(item, FatalError):
                raise item
            if isinstance(item, CancellationError):
                cancelled = item
                results[sub.id] = {"success": False, "error": item.to_dict()}
                continue
            if isinstance(item, BaseException):
                item = (sub, None, EngineError.from_exception(item))
            _, content, error = item
            if error is not None:
                failed += 1
                results[sub.id] = {"success": False, "error": error.to_dict()}
                logger.warning(f"Sub-task {sub.id} failed: {error.message}")
            else:
                contents.append(content or "")
                results[sub.id] = {"success": True, "content": content}

        response = Response(
            task_id=task.id,
            content="\n\n".join(contents),
            metadata={
                "executionMode": "parallel",
                "taskType": task.kind.value,
                "subTaskCount": len(sub_tasks),
                "failedSubTasks": failed,
                "subTaskResults": results,
            },
        )
        if contents:
            self.context.append(Message(role="user", content=task.prompt))
            self.context.append(Message(role="assistant", content=response.content))
        if cancelled is not None or cancellation.cancelled:
            raise _TaskAborted(TaskStatus.CANCELLED, response, cancelled or CancellationError())
        if sub_tasks and failed == len(sub_tasks):
            raise _TaskAborted(
                TaskStatus.FAILED,
                response,
                ExecutionError(f"All {failed} sub-tasks failed", code="ALL_SUBTASKS_FAILED", retryable=False),
            )
        return response

    async def _execute_steering(self, task: Task, cancellation: CancellationToken) -> Response:
        steps = await self.planner.plan(task, cancellation)
        metadata: Dict[str, Any] = {
            "executionMode": "steering",
            "taskType": task.kind.value,
            "steps": len(steps),
        }
        outputs: List[str] = []

        def _partial() -> Response:
            return Response(task_id=task.id, content="\n\n".join(outputs).strip(), metadata=metadata)

        for i, step in enumerate(steps):
            step.status = StepStatus.RUNNING
            await self._emit("step_start", step.description, {"task_id": task.id, "step_id": step.id, "index": i})
            try:
                cancellation.raise_if_cancelled()
                content = await self._run_step(step, task, cancellation)
            except FatalError:
                step.status = StepStatus.FAILED
                raise
            except EngineError as e:
                step.status = StepStatus.FAILED
                step.error = e.to_dict()
                metadata["failedStep"] = step.id
                metadata["error"] = step.error
                await self._emit("step_end", step.status.value, {"task_id": task.id, "step_id": step.id, "error": step.error})
                status = TaskStatus.CANCELLED if isinstance(e, CancellationError) else TaskStatus.FAILED
                logger.warning(f"Step {step.id} failed, aborting remaining {len(steps) - i - 1} step(s): {e.message}")
                raise _TaskAborted(status, _partial(), e)

            step.status = StepStatus.COMPLETED
            step.result = {"content": content, "stepId": step.id}
            outputs.append(content)
            metadata[f"step_{i}_type"] = step.kind.value
            metadata[f"step_{i}_result"] = step.result
            await self._emit("step_end", step.status.value, {"task_id": task.id, "step_id": step.id})

        return _partial()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_step(self, step: ExecutionStep, task: Task, cancellation: CancellationToken) -> str:
        if step.kind == StepKind.MODEL:
            return await self._model_step(f"Step: {step.description}\nTask: {task.prompt}", cancellation)
        if step.kind == StepKind.TOOL:
            return await self._tool_step(step, cancellation)
        if step.kind == StepKind.SUBAGENT:
            child = Task(
                prompt=step.prompt or step.description,
                kind=TaskKind.SIMPLE,
                id=f"{step.id}_agent",
                parent_id=task.id,
            )
            response = await self._execute_simple(child, cancellation)
            return response.content
        raise ExecutionError(f"Unknown step kind: {step.kind}", retryable=False)

    async def _model_step(self, prompt: str, cancellation: CancellationToken) -> str:
        await self._maybe_compact(cancellation)
        self.context.append(Message(role="user", content=prompt))
        messages, trimmed = self.context.get_formatted()
        if trimmed:
            logger.debug("Formatted context was trimmed to fit the token budget")
        content = await self._call_model(messages, cancellation)
        self.context.append(Message(role="assistant", content=content))
        return content

    async def _tool_step(self, step: ExecutionStep, cancellation: CancellationToken) -> str:
        if self.dispatcher is None or self.approvals is None:
            raise ExecutionError("No tool dispatcher configured", code="NO_DISPATCHER", retryable=False)
        call = ToolCall(id=step.id, name=step.tool_name or "", arguments=dict(step.tool_params))
        self.context.append(Message(role="assistant", content=step.description, tool_calls=[call]))

        result = await self.dispatcher.dispatch(
            call.name,
            call.arguments,
            session_id=self.session_id,
            approvals=self.approvals,
            cancellation=cancellation,
            tool_call_id=call.id,
        )
        self.context.record_tool_call(call, result.success, result.output or result.error_message)
        self.context.append(Message(
            role="tool",
            content=result.output if result.success else f"Error: {result.error_message}",
            tool_call_id=call.id,
        ))
        if result.success:
            return result.output
        error = result.error or {}
        if error.get("code") == "CANCELLED":
            raise CancellationError(error.get("message", "Tool call cancelled"))
        raise _tool_error(error)

    # ------------------------------------------------------------------
    # Model calls and compaction
    # ------------------------------------------------------------------

    async def _call_model(self, messages: List[Dict[str, Any]], cancellation: CancellationToken) -> str:
        op_id = f"model:{self.model_params.get('model_id', 'default')}"

        def _send():
            return send_to_model(self.client, messages, self.model_params)

        if self.model_timeout:
            result = await self.retry_manager.execute_with_timeout(
                _send, self.model_timeout, op_id, cancellation=cancellation
            )
        else:
            result = await self.retry_manager.execute(_send, op_id, cancellation=cancellation)

        usage = result.get("usage") or {}
        input_tokens = int(usage.get("input_tokens", 0) or 0)
        output_tokens = int(usage.get("output_tokens", 0) or 0)
        self.context.record_usage(input_tokens, output_tokens)
        self._usage["input_tokens"] += input_tokens
        self._usage["output_tokens"] += output_tokens
        return result.get("content") or ""

    async def _maybe_compact(self, cancellation: CancellationToken) -> None:
        if not self.context.should_compact(self.compaction_threshold):
            return
        cancellation.raise_if_cancelled()
        result = await cancellation.run(self.context.compact(self.summarizer, self.keep_recent))
        if result is not None:
            await self._emit("compaction", f"{result.pre_tokens} -> {result.post_tokens} tokens", {
                "pre_tokens": result.pre_tokens,
                "post_tokens": result.post_tokens,
                "compacted_messages": result.compacted_messages,
            })

    async def _emit(self, event_type: str, content: str = "", data: Optional[Dict[str, Any]] = None) -> None:
        if self.on_event is None:
            return
        try:
            await self.on_event(AgentEvent(type=event_type, content=content, data=data))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Event callback failed for {event_type}")


def _tool_error(error: Dict[str, Any]) -> EngineError:
    """Rebuild a classified error from a failed ToolResult."""
    classes = {
        ErrorType.VALIDATION_ERROR.value: ValidationError,
        ErrorType.PERMISSION_DENIED.value: PermissionDeniedError,
        ErrorType.TIMEOUT_ERROR.value: OperationTimeoutError,
        ErrorType.NETWORK_ERROR.value: NetworkError,
    }
    cls = classes.get(error.get("type", ""), ExecutionError)
    return cls(
        error.get("message", "Tool call failed"),
        code=error.get("code"),
        retryable=error.get("retryable"),
        context=error.get("context"),
    )
