"""
Tool descriptor and confirmation policies.

A Tool is loaded once by the registry and never mutated. Its confirmation
policy decides, for concrete parameters, whether the call must be approved,
and how a remembered approval generalizes to similar calls in the session.
"""

import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Sequence, Set, Tuple

from agent.cancellation import CancellationToken
from agent.events import PolicyDecision

logger = logging.getLogger(__name__)


class ToolKind(str, Enum):
    READ = "read"
    EDIT = "edit"
    EXECUTE = "execute"
    NETWORK = "network"
    OTHER = "other"


ProgressCallback = Callable[[str], Any]


@dataclass
class ToolCallContext:
    """Per-call context handed to a tool handler."""
    session_id: str
    cancellation: CancellationToken
    on_progress: Optional[ProgressCallback] = None
    tool_call_id: Optional[str] = None

    def progress(self, message: str) -> None:
        if self.on_progress is not None:
            try:
                self.on_progress(message)
            except Exception:
                logger.exception("Progress callback failed")


# handler(validated_params, context) -> ToolResult | str
ToolHandler = Callable[[Dict[str, Any], ToolCallContext], Awaitable[Any]]


class ConfirmationPolicy(Protocol):
    def evaluate(self, tool_name: str, params: Dict[str, Any]) -> PolicyDecision:
        ...

    def signature(self, tool_name: str, params: Dict[str, Any]) -> str:
        """Key under which a session-scoped approval is remembered."""
        ...


def _exact_signature(tool_name: str, params: Dict[str, Any]) -> str:
    return f"{tool_name}:{json.dumps(params, sort_keys=True, default=str)}"


class NeverConfirm:
    def evaluate(self, tool_name: str, params: Dict[str, Any]) -> PolicyDecision:
        return PolicyDecision()

    def signature(self, tool_name: str, params: Dict[str, Any]) -> str:
        return _exact_signature(tool_name, params)


class AlwaysConfirm:
    def __init__(self, risk_level: str = "medium", reason: str = ""):
        self.risk_level = risk_level
        self.reason = reason

    def evaluate(self, tool_name: str, params: Dict[str, Any]) -> PolicyDecision:
        return PolicyDecision(
            require_approval=True,
            reason=self.reason or f"{tool_name} requires approval.",
            risk_level=self.risk_level,
        )

    def signature(self, tool_name: str, params: Dict[str, Any]) -> str:
        return _exact_signature(tool_name, params)


# Patterns that could affect shared systems
SHARED_IMPACT_PATTERNS = (
    "git push", "git pull", "git fetch", "git merge", "git rebase",
    "npm publish", "pip install --global", "sudo", "chmod +x", "docker push",
    "gcloud", "aws", "kubectl apply", "terraform apply", "ansible-playbook",
)

# Highly destructive patterns
DESTRUCTIVE_PATTERNS = (
    "rm -rf", "rm -fr", "rm -r", "rm -f", "rmdir", "> /dev/null",
    "dd if=", "mkfs.", "fdisk", "parted", "fsck",
    "iptables -F", "ufw --force", "systemctl stop", "service stop",
    "docker system prune", "docker volume rm", "docker network rm",
    "git reset --hard", "git clean -fd", "git checkout -- .",
    "DROP TABLE", "DROP DATABASE", "TRUNCATE", "DELETE FROM",
    "kubectl delete", "helm uninstall",
)


class CommandPolicy:
    """Policy for shell-like tools taking a `command` parameter.

    Destructive commands are blocked (or need approval when blocking is off);
    shared-impact commands need approval; everything else needs approval only
    when always_confirm is set. Similar calls share the first prefix_words
    words of the command.
    """

    def __init__(
        self,
        command_param: str = "command",
        block_destructive: bool = True,
        always_confirm: bool = True,
        prefix_words: int = 2,
        destructive_patterns: Sequence[str] = DESTRUCTIVE_PATTERNS,
        shared_impact_patterns: Sequence[str] = SHARED_IMPACT_PATTERNS,
    ):
        self.command_param = command_param
        self.block_destructive = block_destructive
        self.always_confirm = always_confirm
        self.prefix_words = prefix_words
        self.destructive_patterns = tuple(destructive_patterns)
        self.shared_impact_patterns = tuple(shared_impact_patterns)

    def evaluate(self, tool_name: str, params: Dict[str, Any]) -> PolicyDecision:
        cmd = str(params.get(self.command_param, ""))
        if any(p in cmd for p in self.destructive_patterns):
            if self.block_destructive:
                return PolicyDecision(
                    blocked=True, reason="Blocked destructive command by policy engine.", risk_level="high"
                )
            return PolicyDecision(
                require_approval=True, reason="Destructive command requires explicit approval.", risk_level="high"
            )
        if any(p in cmd for p in self.shared_impact_patterns):
            return PolicyDecision(
                require_approval=True, reason="Shared-impact command requires explicit approval.", risk_level="high"
            )
        if self.always_confirm:
            return PolicyDecision(require_approval=True, reason=f"Run command: {cmd[:120]}", risk_level="medium")
        return PolicyDecision()

    def signature(self, tool_name: str, params: Dict[str, Any]) -> str:
        cmd = str(params.get(self.command_param, "")).strip()
        try:
            words = shlex.split(cmd)
        except ValueError:
            words = cmd.split()
        return f"cmd:{tool_name}:{' '.join(words[: self.prefix_words])}"


class FileExtensionPolicy:
    """Policy for file-writing tools. Similar calls share the file extension
    of the path parameter; protected extensions are high risk."""

    def __init__(
        self,
        path_param: str = "path",
        protected_extensions: Iterable[str] = (".env", ".pem", ".key"),
    ):
        self.path_param = path_param
        self.protected_extensions: Set[str] = {e.lower() for e in protected_extensions}

    def _extension(self, params: Dict[str, Any]) -> str:
        path = str(params.get(self.path_param, ""))
        base = os.path.basename(path)
        ext = os.path.splitext(base)[1].lower()
        # dotfiles such as ".env" have no splitext extension
        if not ext and base.startswith("."):
            ext = base.lower()
        return ext or "<none>"

    def evaluate(self, tool_name: str, params: Dict[str, Any]) -> PolicyDecision:
        ext = self._extension(params)
        path = params.get(self.path_param, "")
        if ext in self.protected_extensions:
            return PolicyDecision(require_approval=True, reason=f"Modify protected file {path}", risk_level="high")
        return PolicyDecision(require_approval=True, reason=f"Modify {path}", risk_level="medium")

    def signature(self, tool_name: str, params: Dict[str, Any]) -> str:
        return f"ext:{tool_name}:{self._extension(params)}"


@dataclass(frozen=True)
class Tool:
    """Immutable tool descriptor."""
    name: str
    handler: ToolHandler
    kind: ToolKind = ToolKind.OTHER
    is_read_only: bool = False
    param_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    confirmation_policy: ConfirmationPolicy = field(default_factory=NeverConfirm)
    description: str = ""
    # Parameter names whose values identify the resources a call touches
    resource_keys: Tuple[str, ...] = ()

    async def execute(self, params: Dict[str, Any], context: ToolCallContext) -> Any:
        return await self.handler(params, context)


class ApprovalMemory:
    """Session-scoped approvals, keyed by (tool name, policy signature)."""

    def __init__(self):
        self._approved: Set[Tuple[str, str]] = set()

    def remember(self, tool_name: str, signature: str) -> None:
        self._approved.add((tool_name, signature))
        logger.info(f"Remembering approval for {tool_name} ({signature})")

    def is_approved(self, tool_name: str, signature: str) -> bool:
        return (tool_name, signature) in self._approved

    def clear(self) -> None:
        self._approved.clear()

    def to_list(self) -> list:
        return sorted([list(pair) for pair in self._approved])

    @classmethod
    def from_list(cls, rows: Iterable[Sequence[str]]) -> "ApprovalMemory":
        memory = cls()
        for tool_name, signature in rows:
            memory._approved.add((tool_name, signature))
        return memory

    def __len__(self) -> int:
        return len(self._approved)
