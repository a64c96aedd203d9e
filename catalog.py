"""Tool catalog aggregation across MCP servers.

Servers are consulted in registration order. When two servers expose the
same tool name the first one registered owns it; the later descriptor
stays in the flat list the LLM sees but never receives calls.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Protocol, Sequence

from schema import mcp_tool_to_gemini, mcp_tool_to_openai

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: Optional[str] = None
    input_schema: dict = field(default_factory=dict)
    owner_server_id: Optional[str] = None

    @classmethod
    def from_json(cls, raw: dict, owner_server_id: Optional[str] = None) -> "ToolDescriptor":
        """Build from an MCP ``tools/list`` entry."""
        return cls(
            name=raw["name"],
            description=raw.get("description"),
            input_schema=raw.get("inputSchema") or {},
            owner_server_id=owner_server_id,
        )

    def to_openai(self) -> dict:
        return mcp_tool_to_openai(self)

    def to_gemini(self) -> dict:
        return mcp_tool_to_gemini(self)


class ToolServer(Protocol):
    """What the orchestrator needs from one connected MCP server."""

    server_id: str
    name: str

    async def list_tools(self) -> list[ToolDescriptor]: ...

    async def call_tool(self, name: str, arguments: dict) -> dict[str, Any]:
        """Returns ``{"content": [...blocks], "isError": bool}``."""
        ...


@dataclass(frozen=True)
class ToolCatalog:
    tools: tuple[ToolDescriptor, ...] = ()
    owners: Mapping[str, str] = field(default_factory=dict)

    def owner_of(self, tool_name: str) -> Optional[str]:
        return self.owners.get(tool_name)

    def __len__(self) -> int:
        return len(self.tools)

    @property
    def names(self) -> list[str]:
        return [t.name for t in self.tools]


EMPTY_CATALOG = ToolCatalog()


def build_catalog(listings: Mapping[str, Sequence[ToolDescriptor]]) -> ToolCatalog:
    """Flatten per-server tool listings into one catalog.

    Args:
        listings: server id -> descriptors, iterated in registration order.

    Returns:
        A ToolCatalog whose ``owners`` maps each tool name to the first
        server that advertised it.
    """
    tools: list[ToolDescriptor] = []
    owners: dict[str, str] = {}
    for server_id, descriptors in listings.items():
        for descriptor in descriptors:
            if descriptor.owner_server_id != server_id:
                descriptor = replace(descriptor, owner_server_id=server_id)
            tools.append(descriptor)
            if descriptor.name in owners:
                logger.info(
                    "Tool %r from server %s shadowed by server %s",
                    descriptor.name, server_id, owners[descriptor.name],
                )
                continue
            owners[descriptor.name] = server_id
    return ToolCatalog(tools=tuple(tools), owners=owners)


async def collect_listings(
    servers: Mapping[str, ToolServer],
) -> dict[str, list[ToolDescriptor]]:
    """List tools from every server concurrently.

    A server that fails contributes an empty listing. The returned dict
    keeps the registration order of ``servers``.
    """
    server_ids = list(servers)

    async def _list(server_id: str) -> list[ToolDescriptor]:
        try:
            return list(await servers[server_id].list_tools())
        except Exception as e:
            logger.warning("Failed to list tools for server %s: %s", server_id, e)
            return []

    results = await asyncio.gather(*(_list(sid) for sid in server_ids))
    return dict(zip(server_ids, results))


async def aggregate(servers: Mapping[str, ToolServer]) -> ToolCatalog:
    return build_catalog(await collect_listings(servers))
