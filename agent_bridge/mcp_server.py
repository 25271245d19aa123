"""In-process MCP servers.

An SDK MCP server lives inside the application instead of a separate
process. The CLI reaches it through ``mcp_message`` control requests, which
the control protocol hands to :meth:`SdkMcpServer.handle_message`.

Example::

    @tool("add", "Add two numbers", {"a": float, "b": float})
    async def add(args):
        return {"content": [{"type": "text", "text": str(args["a"] + args["b"])}]}

    calculator = create_sdk_mcp_server("calculator", tools=[add])
    options = AgentOptions(mcp_servers={"calc": calculator})
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Union

from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    ToolAnnotations,
)
from pydantic import BaseModel

from agent_bridge._errors import McpContractError, McpError, McpNotFoundError
from agent_bridge.types import McpSdkServerConfig

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Union[dict[str, Any], Awaitable[dict[str, Any]]]]
ResourceReader = Callable[[], Union[dict[str, Any], Awaitable[dict[str, Any]]]]
PromptGenerator = Callable[[dict[str, Any]], Union[dict[str, Any], Awaitable[dict[str, Any]]]]

_JSON_SCHEMA_TYPES: dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
    "string": "string",
    "str": "string",
    "integer": "integer",
    "int": "integer",
    "number": "number",
    "float": "number",
    "boolean": "boolean",
    "bool": "boolean",
    "array": "array",
    "object": "object",
}


@dataclass
class SdkMcpTool:
    """Tool definition for an in-process MCP server."""

    name: str
    description: str
    input_schema: dict[str, Any] | type[BaseModel]
    handler: ToolHandler
    annotations: ToolAnnotations | dict[str, Any] | None = None


@dataclass
class SdkMcpResource:
    """Resource definition; ``reader`` returns ``{"contents": [...]}``."""

    uri: str
    name: str
    reader: ResourceReader
    description: str | None = None
    mime_type: str | None = None


@dataclass
class SdkMcpPrompt:
    """Prompt definition; ``generator`` returns ``{"messages": [...]}``."""

    name: str
    generator: PromptGenerator
    description: str | None = None
    arguments: list[dict[str, Any]] | None = None


def tool(
    name: str,
    description: str,
    input_schema: dict[str, Any] | type[BaseModel],
    annotations: ToolAnnotations | dict[str, Any] | None = None,
) -> Callable[[ToolHandler], SdkMcpTool]:
    """Decorator turning a handler function into an :class:`SdkMcpTool`.

    ``input_schema`` may be a full JSON schema, a simple ``{"param": type}``
    mapping (every parameter becomes required), or a Pydantic model class.
    The handler receives the raw argument dict and returns a dict with a
    ``content`` list; it may be sync or async.
    """

    def decorator(handler: ToolHandler) -> SdkMcpTool:
        return SdkMcpTool(
            name=name,
            description=description,
            input_schema=input_schema,
            handler=handler,
            annotations=annotations,
        )

    return decorator


def create_tool(
    name: str,
    description: str,
    input_schema: dict[str, Any] | type[BaseModel],
    handler: ToolHandler,
    annotations: ToolAnnotations | dict[str, Any] | None = None,
) -> SdkMcpTool:
    return tool(name, description, input_schema, annotations)(handler)


def create_resource(
    uri: str,
    name: str,
    reader: ResourceReader,
    description: str | None = None,
    mime_type: str | None = None,
) -> SdkMcpResource:
    return SdkMcpResource(
        uri=uri, name=name, reader=reader, description=description, mime_type=mime_type
    )


def create_prompt(
    name: str,
    generator: PromptGenerator,
    description: str | None = None,
    arguments: list[dict[str, Any]] | None = None,
) -> SdkMcpPrompt:
    return SdkMcpPrompt(
        name=name, generator=generator, description=description, arguments=arguments
    )


def _is_full_schema(schema: dict[str, Any]) -> bool:
    schema_type = schema.get("type")
    if not isinstance(schema_type, str):
        return False
    return isinstance(schema.get("properties"), dict) or schema_type == "object"


def convert_input_schema(schema: Any) -> dict[str, Any]:
    """Normalize a tool input schema to a JSON schema object."""
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_json_schema()

    if isinstance(schema, dict):
        if _is_full_schema(schema):
            return schema
        properties = {
            param_name: {"type": _JSON_SCHEMA_TYPES.get(param_type, "string")}
            for param_name, param_type in schema.items()
        }
        return {
            "type": "object",
            "properties": properties,
            "required": list(properties.keys()),
        }

    return {"type": "object", "properties": {}}


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _jsonrpc_result(message_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": message_id, "result": result}


def _jsonrpc_error(message_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": message_id, "error": {"code": code, "message": message}}


class SdkMcpServer:
    """In-process MCP server backed by tool, resource and prompt registries.

    Registries are fixed at construction; names (and resource URIs) must be
    unique.
    """

    def __init__(
        self,
        name: str,
        version: str = "1.0.0",
        tools: Sequence[SdkMcpTool] | None = None,
        resources: Sequence[SdkMcpResource] | None = None,
        prompts: Sequence[SdkMcpPrompt] | None = None,
    ) -> None:
        self.name = name
        self.version = version
        self._tools = self._index(tools or [], lambda item: item.name, "tool")
        self._resources = self._index(resources or [], lambda item: item.uri, "resource")
        self._prompts = self._index(prompts or [], lambda item: item.name, "prompt")
        self._methods: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "initialize": self._handle_initialize,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "resources/list": self._handle_resources_list,
            "resources/read": self._handle_resources_read,
            "prompts/list": self._handle_prompts_list,
            "prompts/get": self._handle_prompts_get,
            "notifications/initialized": self._handle_initialized_notification,
        }

    @staticmethod
    def _index(items: Sequence[Any], key: Callable[[Any], str], kind: str) -> dict[str, Any]:
        index: dict[str, Any] = {}
        for item in items:
            item_key = key(item)
            if item_key in index:
                raise ValueError(f"Duplicate {kind} '{item_key}'")
            index[item_key] = item
        return index

    @property
    def tools(self) -> list[SdkMcpTool]:
        return list(self._tools.values())

    @property
    def resources(self) -> list[SdkMcpResource]:
        return list(self._resources.values())

    @property
    def prompts(self) -> list[SdkMcpPrompt]:
        return list(self._prompts.values())

    # ------------------------------------------------------------------
    # Registry operations
    # ------------------------------------------------------------------

    def list_tools(self) -> list[dict[str, Any]]:
        tools = []
        for item in self._tools.values():
            entry: dict[str, Any] = {
                "name": item.name,
                "description": item.description,
                "inputSchema": convert_input_schema(item.input_schema),
            }
            annotations = item.annotations
            if isinstance(annotations, BaseModel):
                annotations = annotations.model_dump(exclude_none=True, by_alias=True)
            if annotations:
                entry["annotations"] = annotations
            tools.append(entry)
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Run a tool and return its result untouched.

        Raises:
            McpNotFoundError: If no tool is registered under ``name``.
            McpContractError: If the handler does not return a ``content`` list.
        """
        registered = self._tools.get(name)
        if registered is None:
            raise McpNotFoundError(f"Tool '{name}' not found", INVALID_PARAMS)

        result = await _call(registered.handler, arguments)
        if not isinstance(result, dict) or not isinstance(result.get("content"), list):
            raise McpContractError(
                f"Tool '{name}' must return a dict with a 'content' list", INTERNAL_ERROR
            )
        return result

    def list_resources(self) -> list[dict[str, Any]]:
        resources = []
        for item in self._resources.values():
            entry: dict[str, Any] = {"uri": item.uri, "name": item.name}
            if item.description is not None:
                entry["description"] = item.description
            if item.mime_type is not None:
                entry["mimeType"] = item.mime_type
            resources.append(entry)
        return resources

    async def read_resource(self, uri: str) -> dict[str, Any]:
        registered = self._resources.get(uri)
        if registered is None:
            raise McpNotFoundError(f"Resource '{uri}' not found", INVALID_PARAMS)

        result = await _call(registered.reader)
        if not isinstance(result, dict) or not isinstance(result.get("contents"), list):
            raise McpContractError(
                f"Resource '{uri}' must return a dict with a 'contents' list", INTERNAL_ERROR
            )
        return result

    def list_prompts(self) -> list[dict[str, Any]]:
        prompts = []
        for item in self._prompts.values():
            entry: dict[str, Any] = {"name": item.name}
            if item.description is not None:
                entry["description"] = item.description
            if item.arguments is not None:
                entry["arguments"] = item.arguments
            prompts.append(entry)
        return prompts

    async def get_prompt(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        registered = self._prompts.get(name)
        if registered is None:
            raise McpNotFoundError(f"Prompt '{name}' not found", INVALID_PARAMS)

        result = await _call(registered.generator, arguments or {})
        if not isinstance(result, dict) or not isinstance(result.get("messages"), list):
            raise McpContractError(
                f"Prompt '{name}' must return a dict with a 'messages' list", INTERNAL_ERROR
            )
        return result

    # ------------------------------------------------------------------
    # JSON-RPC dispatch
    # ------------------------------------------------------------------

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]:
        """Answer one JSON-RPC request.

        Failures are returned as JSON-RPC error objects, never raised.
        """
        message_id = message.get("id")
        method = message.get("method")
        handler = self._methods.get(method or "")
        if handler is None:
            return _jsonrpc_error(message_id, METHOD_NOT_FOUND, f"Method '{method}' not found")

        try:
            result = await handler(message.get("params") or {})
        except McpError as exc:
            logger.debug(f"[mcp] {self.name}: {method} failed: {exc}")
            return _jsonrpc_error(message_id, exc.code, str(exc))
        except Exception as exc:
            logger.warning(
                f"[mcp] {self.name}: {method} handler raised: {type(exc).__name__}: {exc}",
                exc_info=True,
            )
            return _jsonrpc_error(message_id, INTERNAL_ERROR, str(exc))
        return _jsonrpc_result(message_id, result)

    async def _handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        capabilities: dict[str, Any] = {}
        if self._tools:
            capabilities["tools"] = {}
        if self._resources:
            capabilities["resources"] = {}
        if self._prompts:
            capabilities["prompts"] = {}
        return {
            "protocolVersion": params.get("protocolVersion") or LATEST_PROTOCOL_VERSION,
            "capabilities": capabilities,
            "serverInfo": {"name": self.name, "version": self.version},
        }

    async def _handle_tools_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"tools": self.list_tools()}

    async def _handle_tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not name:
            raise McpError("Missing name parameter for tools/call", INVALID_PARAMS)
        result = dict(await self.call_tool(name, params.get("arguments") or {}))
        if "is_error" in result and "isError" not in result:
            result["isError"] = bool(result["is_error"])
        if "structured_content" in result and "structuredContent" not in result:
            result["structuredContent"] = result["structured_content"]
        return result

    async def _handle_resources_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"resources": self.list_resources()}

    async def _handle_resources_read(self, params: dict[str, Any]) -> dict[str, Any]:
        uri = params.get("uri")
        if not uri:
            raise McpError("Missing uri parameter for resources/read", INVALID_PARAMS)
        return await self.read_resource(uri)

    async def _handle_prompts_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"prompts": self.list_prompts()}

    async def _handle_prompts_get(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not name:
            raise McpError("Missing name parameter for prompts/get", INVALID_PARAMS)
        return await self.get_prompt(name, params.get("arguments") or {})

    async def _handle_initialized_notification(self, params: dict[str, Any]) -> dict[str, Any]:
        return {}


def create_sdk_mcp_server(
    name: str,
    version: str = "1.0.0",
    tools: Sequence[SdkMcpTool] | None = None,
    resources: Sequence[SdkMcpResource] | None = None,
    prompts: Sequence[SdkMcpPrompt] | None = None,
) -> McpSdkServerConfig:
    """Create an in-process MCP server config for ``AgentOptions.mcp_servers``."""
    server = SdkMcpServer(
        name=name,
        version=version,
        tools=tools,
        resources=resources,
        prompts=prompts,
    )
    return McpSdkServerConfig(type="sdk", name=name, instance=server)


__all__ = [
    "SdkMcpTool",
    "SdkMcpResource",
    "SdkMcpPrompt",
    "SdkMcpServer",
    "tool",
    "create_tool",
    "create_resource",
    "create_prompt",
    "create_sdk_mcp_server",
    "convert_input_schema",
]
