"""
Tool catalog: the live union of tools and resources offered by connected servers.

The connection manager rebuilds the catalog after every state transition.
Each rebuild produces a new immutable snapshot that replaces the previous one
in a single assignment, so readers never observe a half-built catalog.

Naming rules:
  - A tool name offered by exactly one server is exposed unqualified.
  - A tool name offered by several servers is exposed as "{server_id}__{tool}"
    for every owner; the unqualified name still resolves, to the owner with
    the highest priority (ties broken by ascending server id).
  - Qualified names always resolve, whether or not the name collides.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from mcp_orchestrator.models.mcp import ResourceDescriptor, ToolDescriptor
from mcp_orchestrator.utils.logging import get_logger

logger = get_logger("tool-catalog")

QUALIFIER_SEPARATOR = "__"


def get_prefixed_tool_name(server_id: str, tool_name: str) -> str:
    """Server-qualified tool name, e.g. ``files__read``."""
    return f"{server_id}{QUALIFIER_SEPARATOR}{tool_name}"


@dataclass
class CatalogSource:
    """What one connected server contributes to the catalog."""
    server_id: str
    priority: int
    tools: List[Dict[str, Any]] = field(default_factory=list)
    resources: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class CatalogSnapshot:
    version: int
    tools: Tuple[ToolDescriptor, ...] = ()
    resources: Tuple[ResourceDescriptor, ...] = ()
    tools_by_name: Mapping[str, ToolDescriptor] = field(default_factory=lambda: MappingProxyType({}))
    resources_by_uri: Mapping[str, ResourceDescriptor] = field(default_factory=lambda: MappingProxyType({}))


def _owner_order(source: CatalogSource) -> Tuple[int, str]:
    return (-source.priority, source.server_id)


def build_snapshot(sources: Iterable[CatalogSource], version: int) -> CatalogSnapshot:
    """Compute a catalog snapshot from the contributions of connected servers."""
    ordered = sorted(sources, key=_owner_order)

    # tool name -> owners in preference order, each with the raw tool definition
    owners: Dict[str, List[Tuple[CatalogSource, Dict[str, Any]]]] = {}
    for source in ordered:
        seen = set()
        for raw in source.tools:
            tool_name = raw.get("name") if isinstance(raw, dict) else None
            if not tool_name or not isinstance(tool_name, str):
                logger.warning(f"Skipping tool without a name from {source.server_id}")
                continue
            if tool_name in seen:
                logger.warning(f"Duplicate tool '{tool_name}' on {source.server_id}, keeping the first")
                continue
            seen.add(tool_name)
            owners.setdefault(tool_name, []).append((source, raw))

    tools: List[ToolDescriptor] = []
    by_name: Dict[str, ToolDescriptor] = {}
    preferred: Dict[str, ToolDescriptor] = {}

    for tool_name, entries in owners.items():
        collides = len(entries) > 1
        for index, (source, raw) in enumerate(entries):
            qualified = get_prefixed_tool_name(source.server_id, tool_name)
            descriptor = ToolDescriptor(
                name=qualified if collides else tool_name,
                tool_name=tool_name,
                qualified_name=qualified,
                description=raw.get("description") or "",
                input_schema=raw.get("inputSchema") or {"type": "object", "properties": {}},
                owner_server_id=source.server_id,
                owner_priority=source.priority,
                collides=collides,
            )
            tools.append(descriptor)
            by_name[qualified] = descriptor
            if index == 0:
                preferred[tool_name] = descriptor

    # Unqualified names never shadow a qualified one
    for tool_name, descriptor in preferred.items():
        by_name.setdefault(tool_name, descriptor)

    resources: List[ResourceDescriptor] = []
    by_uri: Dict[str, ResourceDescriptor] = {}
    for source in ordered:
        for raw in source.resources:
            uri = raw.get("uri") if isinstance(raw, dict) else None
            if not uri:
                continue
            descriptor = ResourceDescriptor(
                uri=uri,
                name=raw.get("name") or "",
                description=raw.get("description") or "",
                mime_type=raw.get("mimeType"),
                owner_server_id=source.server_id,
            )
            resources.append(descriptor)
            by_uri.setdefault(uri, descriptor)

    tools.sort(key=lambda t: (t.name, t.owner_server_id))
    return CatalogSnapshot(
        version=version,
        tools=tuple(tools),
        resources=tuple(resources),
        tools_by_name=MappingProxyType(by_name),
        resources_by_uri=MappingProxyType(by_uri),
    )


class ToolCatalog:
    """Read side of the catalog. Only the connection manager calls rebuild()."""

    def __init__(self):
        self._snapshot = CatalogSnapshot(version=0)

    @property
    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def rebuild(self, sources: Iterable[CatalogSource], reason: str = "") -> CatalogSnapshot:
        snapshot = build_snapshot(sources, self._snapshot.version + 1)
        self._snapshot = snapshot
        logger.debug(
            "Catalog rebuilt",
            extra={"data": {
                "version": snapshot.version,
                "tools": len(snapshot.tools),
                "resources": len(snapshot.resources),
                "reason": reason,
            }}
        )
        return snapshot

    def all_tools(self, server_id: Optional[str] = None) -> List[ToolDescriptor]:
        tools = self._snapshot.tools
        if server_id is None:
            return list(tools)
        return [t for t in tools if t.owner_server_id == server_id]

    def resolve(self, name: str) -> Optional[ToolDescriptor]:
        """Find the descriptor an exposed, qualified or unqualified tool name refers to."""
        return self._snapshot.tools_by_name.get(name)

    def all_resources(self, server_id: Optional[str] = None) -> List[ResourceDescriptor]:
        resources = self._snapshot.resources
        if server_id is None:
            return list(resources)
        return [r for r in resources if r.owner_server_id == server_id]

    def resolve_resource(self, uri: str) -> Optional[ResourceDescriptor]:
        return self._snapshot.resources_by_uri.get(uri)

    def search(self, keyword: str) -> List[ToolDescriptor]:
        """Case-insensitive match on tool name and description."""
        needle = keyword.lower().strip()
        if not needle:
            return self.all_tools()
        return [
            t for t in self._snapshot.tools
            if needle in t.name.lower() or needle in t.description.lower()
        ]

    def find_resources(
        self,
        server_id: Optional[str] = None,
        mime_type: Optional[str] = None,
        pattern: Optional[str] = None,
        keyword: Optional[str] = None,
    ) -> List[ResourceDescriptor]:
        """
        Filter the resource catalog. All given filters must match.

        Args:
            server_id: Owning server
            mime_type: Case-insensitive substring of the MIME type ("json" matches application/json)
            pattern: Case-insensitive glob over the whole URI (``*`` any run, ``?`` one character)
            keyword: Case-insensitive substring of the name, description or URI
        """
        mime = mime_type.lower() if mime_type else None
        glob = pattern.lower() if pattern else None
        needle = keyword.lower().strip() if keyword else None

        matches = []
        for resource in self.all_resources(server_id):
            if mime and mime not in (resource.mime_type or "").lower():
                continue
            if glob and not fnmatchcase(resource.uri.lower(), glob):
                continue
            if needle and not any(needle in text.lower()
                                  for text in (resource.name, resource.description, resource.uri)):
                continue
            matches.append(resource)
        return matches
