"""Shared types for the tools package."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from agent.errors import EngineError


@dataclass
class ToolResult:
    """Result from executing a tool. Failures carry a classified error dict
    (see EngineError.to_dict) instead of raising."""
    success: bool
    output: str = ""
    error: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def error_type(self) -> Optional[str]:
        return self.error.get("type") if self.error else None

    @property
    def error_message(self) -> str:
        return self.error.get("message", "") if self.error else ""

    @classmethod
    def ok(cls, output: Any = "", **metadata: Any) -> "ToolResult":
        return cls(success=True, output=output if isinstance(output, str) else str(output), metadata=metadata)

    @classmethod
    def failure(cls, error: BaseException, output: str = "", **metadata: Any) -> "ToolResult":
        return cls(
            success=False,
            output=output,
            error=EngineError.from_exception(error).to_dict(),
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "output": self.output}
        if self.error:
            data["error"] = self.error
        if self.metadata:
            data["metadata"] = self.metadata
        return data
