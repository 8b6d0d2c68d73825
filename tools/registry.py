"""Tool registry: the set of tools available to a session."""

import logging
from typing import Dict, Iterable, List, Optional

from tools.base import Tool
from tools.schemas import check_schema, tool_definition

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        check_schema(tool.param_schema)
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool {tool.name} ({tool.kind.value})")

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def list(self) -> List[Tool]:
        return list(self._tools.values())

    def lookup(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def definitions(self) -> List[Dict]:
        return [tool_definition(t) for t in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
