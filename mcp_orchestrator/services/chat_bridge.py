"""
Bridge between the tool catalog and the conversational engine.

Renders catalog tools as function declarations the engine can offer to the
model, and turns the model's function calls back into invocations. Whatever
happens, the engine receives an envelope, never an exception.

Usage:
    declarations = bridge.tools_for_engine()
    envelope = await bridge.invoke_from_engine("search_files", '{"query": "q3"}')

    # LangChain agents
    tools = bridge.as_langchain_tools()
"""

import json
import re
from typing import Any, Dict, List, Optional, Union

from langchain_core.tools import StructuredTool

from mcp_orchestrator.models.mcp import ErrorKind, InvocationResult, ToolDescriptor
from mcp_orchestrator.services.invoker import Invoker
from mcp_orchestrator.services.tool_catalog import ToolCatalog
from mcp_orchestrator.utils.logging import get_logger

logger = get_logger("chat-bridge")

ENGINE_NAME_MAX_LENGTH = 64
_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")

# Failures worth retrying by the engine; timeouts are excluded since the call may have run
RETRYABLE_KINDS = {ErrorKind.TRANSPORT}


def sanitize_tool_name(name: str) -> str:
    """Map a tool name onto ``^[A-Za-z0-9_-]{1,64}$``."""
    cleaned = _INVALID_NAME_CHARS.sub("_", name)[:ENGINE_NAME_MAX_LENGTH]
    return cleaned or "tool"


def normalize_parameters(schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Coerce an MCP input schema into an object schema the engine accepts."""
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}
    parameters = dict(schema)
    parameters.pop("$schema", None)
    parameters["type"] = "object"
    if not isinstance(parameters.get("properties"), dict):
        parameters["properties"] = {}
    return parameters


def render_content(content: Any) -> str:
    """Flatten an MCP tool result into text for the model."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    items = content.get("content") if isinstance(content, dict) else content
    if isinstance(items, list):
        parts = []
        for item in items:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            else:
                parts.append(json.dumps(item, default=str))
        return "\n".join(parts)
    return json.dumps(content, default=str)


class ChatBridge:

    def __init__(self, catalog: ToolCatalog, invoker: Invoker):
        self.catalog = catalog
        self.invoker = invoker
        self._names: Dict[str, str] = {}
        self._names_version = -1

    def _engine_name_map(self, tools: List[ToolDescriptor]) -> Dict[str, str]:
        mapping: Dict[str, str] = {}
        for tool in tools:
            candidate = sanitize_tool_name(tool.name)
            suffix = 2
            while candidate in mapping and mapping[candidate] != tool.name:
                tail = f"_{suffix}"
                candidate = sanitize_tool_name(tool.name)[:ENGINE_NAME_MAX_LENGTH - len(tail)] + tail
                suffix += 1
            mapping[candidate] = tool.name
        return mapping

    def engine_names(self) -> Dict[str, str]:
        """
        Engine function name -> exposed catalog name.

        Always computed over the whole catalog snapshot, so a tool keeps the same
        engine name whichever subset of declarations it was offered in.
        """
        snapshot = self.catalog.snapshot
        if snapshot.version != self._names_version:
            self._names = self._engine_name_map(list(snapshot.tools))
            self._names_version = snapshot.version
        return dict(self._names)

    def tools_for_engine(self, server_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """OpenAI-style function declarations for the current catalog."""
        mapping = self.engine_names()
        tools = self.catalog.all_tools(server_id)
        by_tool = {exposed: engine for engine, exposed in mapping.items()}

        return [
            {
                "type": "function",
                "function": {
                    "name": by_tool[tool.name],
                    "description": tool.description or f"Tool {tool.tool_name} on {tool.owner_server_id}",
                    "parameters": normalize_parameters(tool.input_schema),
                },
            }
            for tool in tools
        ]

    def _resolve_engine_name(self, name: str) -> str:
        # Names that were never declared (e.g. a qualified catalog name) pass through
        return self.engine_names().get(name, name)

    async def invoke_from_engine(self, name: str,
                                 arguments: Union[str, Dict[str, Any], None] = None) -> Dict[str, Any]:
        """
        Execute a function call from the engine.

        Args:
            name: Function name as declared by tools_for_engine (or a catalog name)
            arguments: JSON object or its string encoding

        Returns:
            {"name", "status": "success"|"error", "content", "error": {kind, message, retryable} | None}
        """
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                return self._invalid_arguments(name, f"Arguments are not valid JSON: {e}")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return self._invalid_arguments(name, "Arguments must be a JSON object")

        tool_name = self._resolve_engine_name(name)
        result = await self.invoker.invoke(tool_name, arguments)
        return self.to_envelope(name, result)

    @staticmethod
    def to_envelope(name: str, result: InvocationResult) -> Dict[str, Any]:
        if result.success:
            return {
                "name": name,
                "status": "success",
                "content": render_content(result.content),
                "error": None,
            }
        error = result.error
        return {
            "name": name,
            "status": "error",
            "content": render_content(result.content),
            "error": {
                "kind": error.kind.value if error else ErrorKind.TRANSPORT.value,
                "message": error.message if error else "Unknown error",
                "retryable": bool(error and error.kind in RETRYABLE_KINDS),
            },
        }

    @staticmethod
    def _invalid_arguments(name: str, message: str) -> Dict[str, Any]:
        logger.warning(f"Rejected engine call to {name}: {message}")
        return {
            "name": name,
            "status": "error",
            "content": "",
            "error": {"kind": "invalid_arguments", "message": message, "retryable": False},
        }

    def as_langchain_tools(self, server_id: Optional[str] = None) -> List[StructuredTool]:
        """Wrap catalog tools as LangChain StructuredTools that call through the invoker."""
        tools = []
        for declaration in self.tools_for_engine(server_id):
            function = declaration["function"]
            tools.append(StructuredTool(
                name=function["name"],
                description=function["description"],
                args_schema=function["parameters"],
                coroutine=self._make_coroutine(function["name"]),
            ))
        return tools

    def _make_coroutine(self, engine_name: str):
        async def call_tool(**kwargs: Any) -> str:
            envelope = await self.invoke_from_engine(engine_name, kwargs)
            if envelope["status"] == "success":
                return envelope["content"]
            return f"Error calling {engine_name}: {envelope['error']['message']}"

        return call_tool
