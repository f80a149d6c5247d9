"""Tool registration helpers."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from turnloop.errors import ToolExecutionError
from turnloop.orchestrator.family import FamilyNode


@dataclass(slots=True)
class ToolContext:
    family_id: str
    participant_id: str
    purpose: str
    tenant_id: str | None = None
    family_index: dict[str, FamilyNode] = field(default_factory=dict)
    extras: dict[str, Any] = field(default_factory=dict)


ToolCallable = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]

ALL_PURPOSES = frozenset({"chat", "run"})


@dataclass(slots=True)
class ToolDef:
    name: str
    description: str
    handler: ToolCallable
    parameters: dict[str, object] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    purposes: frozenset[str] = ALL_PURPOSES


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}

    def register(
        self,
        name: str,
        description: str,
        handler: ToolCallable,
        parameters: dict[str, object] | None = None,
        *,
        purposes: frozenset[str] | None = None,
    ) -> None:
        self._tools[name] = ToolDef(
            name=name,
            description=description,
            handler=handler,
            parameters=parameters or {"type": "object", "properties": {}},
            purposes=purposes or ALL_PURPOSES,
        )

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self, purpose: str | None = None) -> list[dict[str, object]]:
        return [
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            }
            for tool in self._tools.values()
            if purpose is None or purpose in tool.purposes
        ]

    async def execute(self, name: str, arguments: dict[str, Any], context: ToolContext) -> Any:
        tool = self.get(name)
        if tool is None:
            raise ToolExecutionError(f"unknown tool: {name}")
        if context.purpose not in tool.purposes:
            raise ToolExecutionError(f"tool {name} is not available for {context.purpose}")
        return await tool.handler(arguments, context)
