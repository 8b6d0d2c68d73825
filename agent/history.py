"""
Conversation history model, token accounting and summarization.
Handles token estimation for messages and tool calls, and the summarizers used
when older history has to be compacted.
"""

import asyncio
import functools
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3.5
MESSAGE_OVERHEAD_TOKENS = 4
TOOL_CALL_OVERHEAD_TOKENS = 3

ROLES = ("system", "user", "assistant", "tool")


# ------------------------------------------------------------------
# Message model
# ------------------------------------------------------------------

@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(id=data["id"], name=data["name"], arguments=dict(data.get("arguments") or {}))


@dataclass
class Message:
    role: str
    content: Any = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def text(self) -> str:
        """Content flattened to plain text."""
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            parts = []
            for block in self.content:
                if isinstance(block, str):
                    parts.append(block)
                elif isinstance(block, dict) and isinstance(block.get("text"), str):
                    parts.append(block["text"])
            return "\n".join(parts)
        return json.dumps(self.content, default=str)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("tool_calls") or []],
            tool_call_id=data.get("tool_call_id"),
            metadata=dict(data.get("metadata") or {}),
        )


# ------------------------------------------------------------------
# Token estimation
# ------------------------------------------------------------------

class TokenAccountant:
    """Deterministic token estimates. The same message always costs the same,
    so totals can be recomputed from the conversation at any time."""

    def __init__(
        self,
        chars_per_token: float = CHARS_PER_TOKEN,
        message_overhead: int = MESSAGE_OVERHEAD_TOKENS,
        tool_call_overhead: int = TOOL_CALL_OVERHEAD_TOKENS,
    ):
        self.chars_per_token = chars_per_token
        self.message_overhead = message_overhead
        self.tool_call_overhead = tool_call_overhead

    def estimate_tokens(self, text: str) -> int:
        """Token estimate: ~3.5 chars per token for mixed English/code."""
        if not text:
            return 0
        return max(1, int(len(text) / self.chars_per_token))

    def content_tokens(self, content: Any) -> int:
        if content is None:
            return 0
        if isinstance(content, str):
            return self.estimate_tokens(content)
        # Structured content is tokenized in its serialized form
        return self.estimate_tokens(json.dumps(content, sort_keys=True, default=str))

    def tool_call_tokens(self, call: ToolCall) -> int:
        return (
            self.tool_call_overhead
            + self.estimate_tokens(call.name)
            + self.estimate_tokens(json.dumps(call.arguments, sort_keys=True, default=str))
            + self.estimate_tokens(call.id)
        )

    def message_tokens(self, message: Message) -> int:
        total = self.message_overhead
        total += self.estimate_tokens(message.role)
        total += self.content_tokens(message.content)
        for call in message.tool_calls:
            total += self.tool_call_tokens(call)
        return total

    def count(self, messages: List[Message]) -> int:
        return sum(self.message_tokens(m) for m in messages)


# ------------------------------------------------------------------
# Model client helper
# ------------------------------------------------------------------

class ModelClient(Protocol):
    def send(self, messages: List[Dict[str, Any]], model_params: Optional[Dict[str, Any]] = None) -> Any:
        ...


async def send_to_model(
    client: Any,
    messages: List[Dict[str, Any]],
    model_params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Call client.send, which may be a coroutine function or a blocking call.
    Blocking clients run in the default executor so the loop stays responsive."""
    send = client.send
    if inspect.iscoroutinefunction(send):
        result = await send(messages, model_params)
    else:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, functools.partial(send, messages, model_params))
        if inspect.isawaitable(result):
            result = await result
    if isinstance(result, str):
        return {"content": result, "usage": {}}
    return result


# ------------------------------------------------------------------
# Summarization
# ------------------------------------------------------------------

@dataclass
class SummaryResult:
    summary: str
    key_points: List[str] = field(default_factory=list)


class Summarizer(Protocol):
    async def summarize(self, messages: List[Message]) -> SummaryResult:
        ...


class HeuristicSummarizer:
    """Fast summary built from tool calls and short assistant notes.
    Used directly, or as the fallback when a model summary is unavailable."""

    def __init__(self, max_notes: int = 5):
        self.max_notes = max_notes

    async def summarize(self, messages: List[Message]) -> SummaryResult:
        return self.summarize_sync(messages)

    def summarize_sync(self, messages: List[Message]) -> SummaryResult:
        files_read: List[str] = []
        files_edited: List[str] = []
        commands_run: List[str] = []
        other_actions: List[str] = []
        notes: List[str] = []
        user_requests: List[str] = []

        for msg in messages:
            for call in msg.tool_calls:
                args = call.arguments
                path = args.get("path") or args.get("file_path")
                if "command" in args:
                    commands_run.append(str(args["command"])[:80])
                elif path and (call.name.lower().startswith(("read", "view", "open"))):
                    files_read.append(str(path))
                elif path:
                    files_edited.append(str(path))
                else:
                    other_actions.append(call.name)
            text = msg.text().strip()
            if not text:
                continue
            if msg.role == "user" and len(text) < 300:
                user_requests.append(text)
            elif msg.role == "assistant" and len(text) < 300:
                notes.append(text)

        key_points: List[str] = []
        if user_requests:
            key_points.append(f"Requested: {user_requests[-1][:150]}")
        if files_read:
            key_points.append(f"Read: {', '.join(list(dict.fromkeys(files_read))[:15])}")
        if files_edited:
            key_points.append(f"Edited: {', '.join(list(dict.fromkeys(files_edited))[:15])}")
        if commands_run:
            key_points.append(f"Commands: {'; '.join(commands_run[:8])}")
        if other_actions:
            key_points.append(f"Other: {'; '.join(list(dict.fromkeys(other_actions))[:5])}")
        for note in notes[-self.max_notes:]:
            key_points.append(f"Note: {note[:150]}")

        summary = f"Earlier work ({len(messages)} messages):"
        if key_points:
            summary += "\n" + "\n".join(f"- {p}" for p in key_points)
        return SummaryResult(summary=summary, key_points=key_points)


SUMMARY_SYSTEM_PROMPT = (
    "COMPACTION CONTRACT: This summary must allow the agent to continue the task without re-reading everything.\n"
    "Include: the user's goal, files touched, key decisions, current state and next steps.\n"
    "Start with one short paragraph, then list the key points as '- ' bullet lines. Max 400 words."
)


class ModelSummarizer:
    """Summary produced by a (smaller) model. Falls back to the heuristic
    summarizer when the call fails or returns nothing."""

    def __init__(
        self,
        client: Any,
        model_id: Optional[str] = None,
        max_tokens: int = 2000,
        fallback: Optional[HeuristicSummarizer] = None,
    ):
        self.client = client
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.fallback = fallback or HeuristicSummarizer()

    async def summarize(self, messages: List[Message]) -> SummaryResult:
        try:
            conversation_text = self._render(messages)
            params: Dict[str, Any] = {"system": SUMMARY_SYSTEM_PROMPT, "max_tokens": self.max_tokens}
            if self.model_id:
                params["model_id"] = self.model_id
            result = await send_to_model(
                self.client, [{"role": "user", "content": conversation_text}], params
            )
            content = (result.get("content") or "").strip()
            if content:
                return self._parse(content)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"LLM summary failed, falling back to heuristic: {e}")
        return await self.fallback.summarize(messages)

    @staticmethod
    def _render(messages: List[Message]) -> str:
        text_parts = []
        for msg in messages:
            text = msg.text()
            if text:
                label = "result" if msg.role == "tool" else msg.role
                limit = 300 if msg.role == "tool" else 500
                text_parts.append(f"[{label}]: {text[:limit]}")
            for call in msg.tool_calls:
                text_parts.append(f"[tool]: {call.name}({json.dumps(call.arguments, default=str)[:200]})")
        conversation_text = "\n".join(text_parts)
        # Cap to avoid blowing the summary model's context
        if len(conversation_text) > 30000:
            conversation_text = conversation_text[:15000] + "\n...\n" + conversation_text[-15000:]
        return conversation_text

    @staticmethod
    def _parse(content: str) -> SummaryResult:
        key_points = []
        for line in content.splitlines():
            stripped = line.strip()
            if stripped.startswith(("- ", "* ", "• ")):
                key_points.append(stripped[2:].strip())
        return SummaryResult(summary=content, key_points=key_points)
