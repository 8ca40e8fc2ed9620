"""
Tool Registry — startup snapshot of every tool the providers expose.

Built once after the providers are launched; read-only afterwards and
shared by reference with every chat request. Entries store the owning
provider's *name*; dispatch looks the live process up from the supervisor.

Duplicate tool names: the first provider (in configuration order) to
register a name keeps it; later ones are dropped and recorded in
``warnings``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from llmo.errors import McpInvalidResponseError, ToolNotFoundError
from llmo.manager import ProcessSupervisor
from llmo.transport import StdioClient

logger = logging.getLogger(__name__)

EMPTY_SCHEMA: Mapping[str, Any] = MappingProxyType({"type": "object", "properties": {}})


@dataclass(frozen=True)
class ToolDefinition:
    """A tool advertised by a provider."""
    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=lambda: dict(EMPTY_SCHEMA))
    provider: str = ""

    @classmethod
    def from_descriptor(cls, descriptor: Any, provider: str) -> "ToolDefinition":
        """Build from a `tools/list` entry ({name, description, inputSchema|parameters})."""
        if not isinstance(descriptor, dict) or not isinstance(descriptor.get("name"), str):
            raise McpInvalidResponseError(f"{provider}: tool descriptor without a name: {descriptor!r}")
        schema = descriptor.get("inputSchema") or descriptor.get("parameters") or dict(EMPTY_SCHEMA)
        if not isinstance(schema, dict):
            raise McpInvalidResponseError(f"{provider}: tool {descriptor['name']} has a non-object schema")
        return cls(
            name=descriptor["name"],
            description=str(descriptor.get("description") or ""),
            parameters=schema,
            provider=provider,
        )


class ToolRegistry:
    """Immutable tool name -> ToolDefinition table."""

    def __init__(
        self,
        definitions: Iterable[ToolDefinition] = (),
        unavailable: dict[str, str] | None = None,
    ):
        tools: dict[str, ToolDefinition] = {}
        warnings: list[str] = []
        for definition in definitions:
            existing = tools.get(definition.name)
            if existing is not None:
                message = (
                    f"Tool '{definition.name}' from provider {definition.provider} dropped: "
                    f"already registered by {existing.provider}"
                )
                logger.warning(message)
                warnings.append(message)
                continue
            tools[definition.name] = definition

        self._tools = MappingProxyType(tools)
        self.warnings: tuple[str, ...] = tuple(warnings)
        self.unavailable: Mapping[str, str] = MappingProxyType(dict(unavailable or {}))

    @classmethod
    async def build(cls, supervisor: ProcessSupervisor, client: StdioClient) -> "ToolRegistry":
        """Run one `tools/list` per READY provider and merge in configuration order."""
        unavailable: dict[str, str] = {}
        ready = []
        for handle in supervisor.handles():
            if handle.is_ready:
                ready.append(handle.name)
            else:
                unavailable[handle.name] = f"provider is {handle.state.value}"
                logger.warning(f"Skipping tool discovery for {handle.name}: {handle.state.value}")

        listings = await asyncio.gather(
            *(client.list_tools(name) for name in ready), return_exceptions=True
        )

        definitions: list[ToolDefinition] = []
        for name, listing in zip(ready, listings):
            if isinstance(listing, BaseException):
                if not isinstance(listing, Exception):
                    raise listing
                unavailable[name] = str(listing)
                logger.error(f"Tool discovery failed for {name}: {listing}")
                continue
            try:
                found = [ToolDefinition.from_descriptor(d, name) for d in _descriptors(listing, name)]
            except McpInvalidResponseError as e:
                unavailable[name] = str(e)
                logger.error(f"Tool discovery failed for {name}: {e}")
                continue
            logger.info(f"Discovered {len(found)} tool(s) from {name}: {[d.name for d in found]}")
            definitions.extend(found)

        registry = cls(definitions, unavailable)
        logger.info(f"Tool registry built: {len(registry)} tool(s)")
        return registry

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> ToolDefinition:
        definition = self._tools.get(name)
        if definition is None:
            raise ToolNotFoundError(f"Tool not found: {name}")
        return definition

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def definitions(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def _descriptors(listing: Any, provider: str) -> list:
    # Bare list, or MCP's {"tools": [...]} envelope.
    if isinstance(listing, dict) and isinstance(listing.get("tools"), list):
        return listing["tools"]
    if isinstance(listing, list):
        return listing
    raise McpInvalidResponseError(f"{provider}: tools/list returned {type(listing).__name__}, expected a list")
