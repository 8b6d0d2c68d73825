"""
Context window management for one session.
Handles the layered context window, token accounting, compaction and the
formatted message list sent to the model.

The tracked token total is always the accountant's count of the conversation
layer (summary message plus messages). Any disagreement between the tracked
and recomputed totals is treated as corruption.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .cache import HotMessageStore, ResultCache
from .errors import FatalError
from .history import HeuristicSummarizer, Message, Summarizer, SummaryResult, TokenAccountant, ToolCall

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.8


# ------------------------------------------------------------------
# Layers
# ------------------------------------------------------------------

@dataclass
class SystemLayer:
    prompt: str = ""
    tools: List[str] = field(default_factory=list)


@dataclass
class SessionLayer:
    session_id: str = ""
    preferences: Dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)


@dataclass
class CompactionSummary:
    summary: str
    key_points: List[str] = field(default_factory=list)
    # Messages retained verbatim at the time of compaction
    recent_messages: List[Message] = field(default_factory=list)
    compacted_count: int = 0

    def render(self) -> str:
        parts = ["<conversation_summary>", self.summary.strip()]
        extra = [p for p in self.key_points if p not in self.summary]
        if extra:
            parts.append("Key points:")
            parts.extend(f"- {p}" for p in extra)
        parts.append("</conversation_summary>")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "keyPoints": list(self.key_points),
            "recentMessages": [m.to_dict() for m in self.recent_messages],
            "compactedCount": self.compacted_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompactionSummary":
        return cls(
            summary=data.get("summary", ""),
            key_points=list(data.get("keyPoints") or []),
            recent_messages=[Message.from_dict(m) for m in data.get("recentMessages") or []],
            compacted_count=data.get("compactedCount", 0),
        )


@dataclass
class ConversationLayer:
    messages: List[Message] = field(default_factory=list)
    summary: Optional[CompactionSummary] = None


@dataclass
class ToolRecord:
    tool_call_id: str
    name: str
    arguments: Dict[str, Any]
    success: bool
    output: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass
class ToolLayer:
    recent_calls: List[ToolRecord] = field(default_factory=list)


@dataclass
class WorkspaceLayer:
    project_path: str = ""
    current_files: List[str] = field(default_factory=list)
    notes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0
    max: int = 0


@dataclass
class ContextWindow:
    system: SystemLayer = field(default_factory=SystemLayer)
    session: SessionLayer = field(default_factory=SessionLayer)
    conversation: ConversationLayer = field(default_factory=ConversationLayer)
    tool_history: ToolLayer = field(default_factory=ToolLayer)
    workspace: WorkspaceLayer = field(default_factory=WorkspaceLayer)
    token_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class CompactionResult:
    pre_tokens: int
    post_tokens: int
    compacted_messages: int
    retained_messages: int
    summary: CompactionSummary


# ------------------------------------------------------------------
# Manager
# ------------------------------------------------------------------

class ContextWindowManager:
    """Owns one session's ContextWindow. Not safe for concurrent mutation;
    the session's executor lock serializes access."""

    def __init__(
        self,
        session_id: str,
        max_tokens: int,
        *,
        system_prompt: str = "",
        accountant: Optional[TokenAccountant] = None,
        hot_store: Optional[HotMessageStore] = None,
        cache: Optional[ResultCache] = None,
        max_tool_history: int = 50,
    ):
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.accountant = accountant or TokenAccountant()
        self.hot_store = hot_store or HotMessageStore()
        self.cache = cache
        self.max_tool_history = max_tool_history
        self.window = ContextWindow()
        self.window.system.prompt = system_prompt
        self.window.session.session_id = session_id
        self.window.token_usage.max = max_tokens

    @property
    def session_id(self) -> str:
        return self.window.session.session_id

    @property
    def messages(self) -> List[Message]:
        return list(self.window.conversation.messages)

    @property
    def summary(self) -> Optional[CompactionSummary]:
        return self.window.conversation.summary

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def append(self, message: Message) -> int:
        """Append to the conversation. Returns the message's token cost."""
        cost = self.accountant.message_tokens(message)
        self.window.conversation.messages.append(message)
        self.window.token_usage.total += cost
        self.hot_store.add(message)
        logger.debug(f"Context +{cost} tokens ({message.role}), total {self.window.token_usage.total}")
        return cost

    def token_count(self) -> int:
        return self.window.token_usage.total

    def recompute_tokens(self) -> int:
        """Token total derived from the conversation layer alone."""
        total = self.accountant.count(self.window.conversation.messages)
        summary_msg = self._summary_message()
        if summary_msg is not None:
            total += self.accountant.message_tokens(summary_msg)
        return total

    def verify(self) -> None:
        """Raise FatalError if the tracked total has drifted from the recomputed one."""
        expected = self.recompute_tokens()
        if expected != self.window.token_usage.total:
            raise FatalError(
                f"Context token accounting drifted: tracked {self.window.token_usage.total}, "
                f"recomputed {expected}",
                context={"session_id": self.session_id},
            )

    def compaction_limit(self, threshold: float = DEFAULT_THRESHOLD) -> int:
        return int(self.window.token_usage.max * threshold)

    def should_compact(self, threshold: float = DEFAULT_THRESHOLD) -> bool:
        return self.token_count() >= self.compaction_limit(threshold)

    def record_usage(self, input_tokens: int = 0, output_tokens: int = 0) -> None:
        """Model-reported usage. Kept apart from the accountant total."""
        self.window.token_usage.input += int(input_tokens or 0)
        self.window.token_usage.output += int(output_tokens or 0)

    def record_tool_call(
        self,
        call: ToolCall,
        success: bool,
        output: str = "",
    ) -> ToolRecord:
        record = ToolRecord(
            tool_call_id=call.id,
            name=call.name,
            arguments=dict(call.arguments),
            success=success,
            output=output[:500],
        )
        calls = self.window.tool_history.recent_calls
        calls.append(record)
        if len(calls) > self.max_tool_history:
            del calls[: len(calls) - self.max_tool_history]
        path = call.arguments.get("path") or call.arguments.get("file_path")
        if path and path not in self.window.workspace.current_files:
            self.window.workspace.current_files.append(str(path))
        return record

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def compact(
        self,
        summarizer: Optional[Summarizer] = None,
        keep_recent: int = 6,
    ) -> Optional[CompactionResult]:
        """Replace all but the most recent messages with a summary.

        Returns None when there is nothing old enough to compact. Raises
        FatalError if the window was already inconsistent or the result does
        not reduce the token count.
        """
        self.verify()
        messages = self.window.conversation.messages
        keep = max(0, min(keep_recent, len(messages) - 1))
        if len(messages) < 2 or len(messages) - keep <= 0:
            logger.info(f"Nothing to compact ({len(messages)} messages)")
            return None

        pre_tokens = self.window.token_usage.total
        old = messages[: len(messages) - keep]
        candidates = messages[len(messages) - keep:]
        retained = self._drop_orphans(candidates)

        result = await self._summarize(old, summarizer or HeuristicSummarizer())
        previous = self.window.conversation.summary
        key_points = list(result.key_points)
        summary_text = result.summary
        if previous is not None:
            key_points = (previous.key_points + key_points)[-20:]
            summary_text = previous.summary.strip() + "\n\n" + summary_text

        compacted_count = len(old) + (previous.compacted_count if previous else 0)
        summary = CompactionSummary(
            summary=summary_text,
            key_points=key_points,
            recent_messages=list(retained),
            compacted_count=compacted_count,
        )
        post_tokens = self._token_cost(summary, retained)
        if post_tokens >= pre_tokens:
            # Keep only the newest summary paragraph and no key points
            summary = CompactionSummary(
                summary=result.summary.split("\n", 1)[0][:200],
                recent_messages=list(retained),
                compacted_count=compacted_count,
            )
            post_tokens = self._token_cost(summary, retained)
        if post_tokens >= pre_tokens:
            raise FatalError(
                f"Compaction did not reduce context ({pre_tokens} -> {post_tokens} tokens)",
                context={"session_id": self.session_id},
            )

        self.window.conversation.messages = list(retained)
        self.window.conversation.summary = summary
        self.window.token_usage.total = self.recompute_tokens()
        self.verify()

        logger.info(
            f"Compacted {len(old)} messages: ~{pre_tokens:,} -> ~{self.window.token_usage.total:,} tokens, "
            f"{len(retained)} messages retained"
        )
        return CompactionResult(
            pre_tokens=pre_tokens,
            post_tokens=self.window.token_usage.total,
            compacted_messages=len(old) + (len(candidates) - len(retained)),
            retained_messages=len(retained),
            summary=summary,
        )

    async def _summarize(self, old: List[Message], summarizer: Summarizer) -> SummaryResult:
        if self.cache is not None:
            cached = self.cache.get_summary(self.session_id, old)
            if cached is not None:
                return cached
        result = await summarizer.summarize(old)
        if self.cache is not None:
            self.cache.cache_summary(self.session_id, old, result)
        return result

    @staticmethod
    def _drop_orphans(candidates: List[Message]) -> List[Message]:
        """Drop tool messages whose originating assistant call was compacted."""
        available = {
            tc.id for m in candidates if m.role == "assistant" for tc in m.tool_calls
        }
        return [
            m for m in candidates
            if not (m.role == "tool" and m.tool_call_id and m.tool_call_id not in available)
        ]

    def _token_cost(self, summary: CompactionSummary, messages: List[Message]) -> int:
        return (
            self.accountant.message_tokens(self._summary_message(summary))
            + self.accountant.count(messages)
        )

    def _summary_message(self, summary: Optional[CompactionSummary] = None) -> Optional[Message]:
        summary = summary or self.window.conversation.summary
        if summary is None:
            return None
        return Message(role="user", content=summary.render(), metadata={"is_compact_summary": True})

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def get_formatted(
        self,
        max_tokens: Optional[int] = None,
        include_tools: bool = False,
        include_workspace: bool = False,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """Messages for the model, trimmed oldest-first to max_tokens.

        Returns (messages, was_compacted); was_compacted is True when messages
        had to be dropped to fit. The window itself is not modified.
        """
        budget = max_tokens or self.window.token_usage.max
        head: List[Message] = []
        if self.window.system.prompt:
            head.append(Message(role="system", content=self.window.system.prompt))
        summary_msg = self._summary_message()
        if summary_msg is not None:
            head.append(summary_msg)

        tail: List[Message] = []
        if include_tools and self.window.tool_history.recent_calls:
            tail.append(Message(role="user", content=self._tool_digest()))
        if include_workspace and self._has_workspace():
            tail.append(Message(role="user", content=self._workspace_digest()))

        used = self.accountant.count(head) + self.accountant.count(tail)
        body: List[Message] = []
        trimmed = False
        for message in reversed(self.window.conversation.messages):
            cost = self.accountant.message_tokens(message)
            if used + cost > budget:
                trimmed = True
                break
            body.append(message)
            used += cost
        body.reverse()
        if trimmed:
            body = self._drop_orphans(body)
            logger.debug(f"Formatted context trimmed to {len(body)} messages ({used} tokens)")

        return [m.to_dict() for m in head + body + tail], trimmed

    def _tool_digest(self) -> str:
        lines = ["<recent_tool_calls>"]
        for rec in self.window.tool_history.recent_calls[-10:]:
            status = "ok" if rec.success else "failed"
            lines.append(f"- {rec.name} ({status})")
        lines.append("</recent_tool_calls>")
        return "\n".join(lines)

    def _has_workspace(self) -> bool:
        ws = self.window.workspace
        return bool(ws.project_path or ws.current_files or ws.notes)

    def _workspace_digest(self) -> str:
        ws = self.window.workspace
        lines = ["<workspace>"]
        if ws.project_path:
            lines.append(f"Project: {ws.project_path}")
        if ws.current_files:
            lines.append(f"Files: {', '.join(ws.current_files[-20:])}")
        for key, value in ws.notes.items():
            lines.append(f"{key}: {value}")
        lines.append("</workspace>")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        w = self.window
        return {
            "system": {"prompt": w.system.prompt, "tools": list(w.system.tools)},
            "session": {
                "session_id": w.session.session_id,
                "preferences": dict(w.session.preferences),
                "started_at": w.session.started_at,
            },
            "conversation": {
                "messages": [m.to_dict() for m in w.conversation.messages],
                "summary": w.conversation.summary.to_dict() if w.conversation.summary else None,
            },
            "tool_history": [
                {
                    "tool_call_id": r.tool_call_id,
                    "name": r.name,
                    "arguments": r.arguments,
                    "success": r.success,
                    "output": r.output,
                    "timestamp": r.timestamp,
                }
                for r in w.tool_history.recent_calls
            ],
            "workspace": {
                "project_path": w.workspace.project_path,
                "current_files": list(w.workspace.current_files),
                "notes": dict(w.workspace.notes),
            },
            "token_usage": {
                "input": w.token_usage.input,
                "output": w.token_usage.output,
                "total": w.token_usage.total,
                "max": w.token_usage.max,
            },
        }

    def restore(self, data: Dict[str, Any]) -> None:
        """Load a snapshot. The token total is recomputed, not trusted."""
        w = ContextWindow()
        system = data.get("system") or {}
        w.system = SystemLayer(prompt=system.get("prompt", ""), tools=list(system.get("tools") or []))
        session = data.get("session") or {}
        w.session = SessionLayer(
            session_id=session.get("session_id") or self.session_id,
            preferences=dict(session.get("preferences") or {}),
            started_at=session.get("started_at", time.time()),
        )
        conv = data.get("conversation") or {}
        w.conversation = ConversationLayer(
            messages=[Message.from_dict(m) for m in conv.get("messages") or []],
            summary=CompactionSummary.from_dict(conv["summary"]) if conv.get("summary") else None,
        )
        w.tool_history = ToolLayer(recent_calls=[ToolRecord(**r) for r in data.get("tool_history") or []])
        ws = data.get("workspace") or {}
        w.workspace = WorkspaceLayer(
            project_path=ws.get("project_path", ""),
            current_files=list(ws.get("current_files") or []),
            notes=dict(ws.get("notes") or {}),
        )
        usage = data.get("token_usage") or {}
        w.token_usage = TokenUsage(
            input=usage.get("input", 0),
            output=usage.get("output", 0),
            max=usage.get("max") or self.window.token_usage.max,
        )
        self.window = w
        self.window.token_usage.total = self.recompute_tokens()
        self.hot_store.clear()
        self.hot_store.extend(w.conversation.messages)
