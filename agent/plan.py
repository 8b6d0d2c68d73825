"""
Tasks, execution steps and the planning policies that produce them.
Also handles extraction and cleaning of plans from LLM responses.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from .cancellation import CancellationToken
from .history import send_to_model
from .resilience import RetryConfig, RetryManager

logger = logging.getLogger(__name__)


class TaskKind(str, Enum):
    SIMPLE = "simple"
    PARALLEL = "parallel"
    STEERING = "steering"


class StepKind(str, Enum):
    MODEL = "model"
    TOOL = "tool"
    SUBAGENT = "subagent"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Task:
    """One unit of requested work. Immutable once created."""
    prompt: str
    kind: TaskKind = TaskKind.SIMPLE
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:12]}")
    parent_id: Optional[str] = None

    def child(self, suffix: str, prompt: str, kind: TaskKind = TaskKind.SIMPLE) -> "Task":
        return Task(prompt=prompt, kind=kind, id=f"{self.id}_{suffix}", parent_id=self.id)


@dataclass
class ExecutionStep:
    id: str
    kind: StepKind
    description: str
    status: StepStatus = StepStatus.PENDING
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    # Tool steps
    tool_name: Optional[str] = None
    tool_params: Dict[str, Any] = field(default_factory=dict)
    # Subagent steps: prompt for the child task
    prompt: Optional[str] = None


# ------------------------------------------------------------------
# Policies
# ------------------------------------------------------------------

class StepPlanner(Protocol):
    async def plan(self, task: Task, cancellation: Optional[CancellationToken] = None) -> List[ExecutionStep]:
        ...


class TaskDecomposer(Protocol):
    def decompose(self, task: Task) -> List[Task]:
        ...


class DefaultStepPlanner:
    """Understand -> prepare -> execute. The prepare step runs a tool when one
    is configured, otherwise it is another model call."""

    def __init__(self, tool_name: Optional[str] = None, tool_params: Optional[Dict[str, Any]] = None):
        self.tool_name = tool_name
        self.tool_params = dict(tool_params or {})

    async def plan(self, task: Task, cancellation: Optional[CancellationToken] = None) -> List[ExecutionStep]:
        steps = [
            ExecutionStep(
                id=f"{task.id}_step1",
                kind=StepKind.MODEL,
                description="Understand the task requirements and constraints",
            )
        ]
        if self.tool_name:
            steps.append(ExecutionStep(
                id=f"{task.id}_step2",
                kind=StepKind.TOOL,
                description="Prepare the environment and tools",
                tool_name=self.tool_name,
                tool_params=dict(self.tool_params),
            ))
        else:
            steps.append(ExecutionStep(
                id=f"{task.id}_step2",
                kind=StepKind.MODEL,
                description="Prepare the environment and tools",
            ))
        steps.append(ExecutionStep(
            id=f"{task.id}_step3",
            kind=StepKind.MODEL,
            description="Execute the task and produce the result",
        ))
        return steps


class DefaultTaskDecomposer:
    """Two independent sub-tasks: analysis/planning and execution/verification."""

    def decompose(self, task: Task) -> List[Task]:
        return [
            task.child("sub1", f"{task.prompt} (sub-task 1: analyze and plan)"),
            task.child("sub2", f"{task.prompt} (sub-task 2: execute and verify)"),
        ]


PLAN_SYSTEM_PROMPT = (
    "Break the user's task into a short ordered list of steps. Reply with the plan "
    "inside <plan>...</plan> tags as a numbered list, one step per line.\n"
    "A step that should run a tool is written as `tool:<name> <json arguments>`.\n"
    "A step that should be delegated to a sub-agent starts with `subagent:`.\n"
    "Every other step is handled by the model."
)

_STEP_RE = re.compile(r"^\s*(?:\d+[.)]|[-*])\s+(.*\S)\s*$")
_TOOL_STEP_RE = re.compile(r"^tool:([\w.\-]+)\s*(\{.*\})?\s*$")


class PlanStepPlanner:
    """Asks the model for a numbered plan and turns each line into a step.
    Falls back to a delegate planner when no usable plan comes back.

    The planning call goes through the retry manager under the operation id
    ``plan:<model_id>`` and observes the task's cancellation token.
    """

    def __init__(
        self,
        client: Any,
        model_params: Optional[Dict[str, Any]] = None,
        fallback: Optional[StepPlanner] = None,
        max_steps: int = 10,
        retry_manager: Optional[RetryManager] = None,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.model_params = dict(model_params or {})
        self.fallback = fallback or DefaultStepPlanner()
        self.max_steps = max_steps
        self.retry_manager = retry_manager or RetryManager(RetryConfig())
        self.timeout = timeout

    async def plan(self, task: Task, cancellation: Optional[CancellationToken] = None) -> List[ExecutionStep]:
        params = {"system": PLAN_SYSTEM_PROMPT, **self.model_params}
        messages = [{"role": "user", "content": task.prompt}]
        op_id = f"plan:{self.model_params.get('model_id', 'default')}"

        def _send():
            return send_to_model(self.client, messages, params)

        if self.timeout:
            result = await self.retry_manager.execute_with_timeout(
                _send, self.timeout, op_id, cancellation=cancellation
            )
        else:
            result = await self.retry_manager.execute(_send, op_id, cancellation=cancellation)
        steps = parse_plan_steps(task, result.get("content") or "", self.max_steps)
        if not steps:
            logger.info(f"No plan steps parsed for {task.id}, using fallback planner")
            return await self.fallback.plan(task, cancellation)
        return steps


def parse_plan_steps(task: Task, text: str, max_steps: int = 10) -> List[ExecutionStep]:
    body = _extract_plan(text) or _strip_plan_preamble(text)
    steps: List[ExecutionStep] = []
    for line in body.split("\n"):
        m = _STEP_RE.match(line)
        if not m:
            continue
        desc = m.group(1)
        step_id = f"{task.id}_step{len(steps) + 1}"
        tool_match = _TOOL_STEP_RE.match(desc)
        if tool_match:
            try:
                params = json.loads(tool_match.group(2)) if tool_match.group(2) else {}
            except json.JSONDecodeError:
                logger.warning(f"Unparseable tool arguments in plan step: {desc}")
                params = {}
            steps.append(ExecutionStep(
                id=step_id, kind=StepKind.TOOL, description=desc,
                tool_name=tool_match.group(1), tool_params=params,
            ))
        elif desc.lower().startswith("subagent:"):
            prompt = desc.split(":", 1)[1].strip()
            steps.append(ExecutionStep(
                id=step_id, kind=StepKind.SUBAGENT, description=desc, prompt=prompt,
            ))
        else:
            steps.append(ExecutionStep(id=step_id, kind=StepKind.MODEL, description=desc))
        if len(steps) >= max_steps:
            break
    return steps


# ------------------------------------------------------------------
# Plan text helpers
# ------------------------------------------------------------------

# Regex to extract plan content from <plan>...</plan> tags
_PLAN_RE = re.compile(r"<plan>\s*(.*?)\s*</plan>", re.DOTALL)


def _strip_plan_preamble(text: str) -> str:
    """Remove conversational preamble before the first plan heading or step."""
    lines = text.split("\n")
    first_idx = None
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith("#") or _STEP_RE.match(line):
            first_idx = i
            break
    if first_idx is None or first_idx == 0:
        return text
    # Check if pre-heading text looks conversational (not plan content)
    preamble = "\n".join(lines[:first_idx]).strip()
    if not preamble:
        return text
    conversational = any(m in preamble.lower() for m in [
        "let me", "i'll", "i will", "based on", "looking at",
        "now i have", "i need", "i can see", "here's", "here is",
        "i've", "the user wants", "i should", "first, let me",
    ])
    if conversational:
        return "\n".join(lines[first_idx:])
    return text


def _extract_plan(text: str) -> Optional[str]:
    """Extract content between <plan>...</plan> tags."""
    m = _PLAN_RE.search(text)
    return m.group(1).strip() if m else None
