#!/usr/bin/env python3
"""TROCCO MCP Server - Access to TROCCO users, datamart definitions, and pipeline definitions."""

import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Optional, TypedDict
from urllib.parse import quote

import httpx
from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent
from pydantic import BaseModel, ConfigDict, Field, ValidationError

__version__ = "0.1.0"

SERVER_NAME = "trocco-mcp-server"
BASE_URL = "https://trocco.io"
USER_AGENT = f"{SERVER_NAME}/{__version__}"
ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")

logger = logging.getLogger("trocco_mcp_server")


# ============================================================================
# ERRORS
# ============================================================================

class TroccoError(Exception):
    """Base class for errors surfaced to a tool invocation."""


class InvalidArguments(TroccoError):
    def __init__(self, tool_name: str, errors: list[dict[str, Any]]):
        self.tool_name = tool_name
        self.errors = errors
        details = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ())) or '<root>'}: {err.get('msg')}"
            for err in errors
        )
        super().__init__(f"Invalid arguments for {tool_name}: {details}")


class UnknownTool(TroccoError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class MissingArguments(TroccoError):
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Arguments are required for {tool_name}")


class RequestFailed(TroccoError):
    def __init__(self, status_code: int, method: str, url: str):
        self.status_code = status_code
        self.method = method
        self.url = url
        super().__init__(f"TROCCO API request failed: {status_code} ({method} {url})")


class TransportError(TroccoError):
    """Network-level failure or an undecodable response body."""


class PaginationLimitExceeded(TroccoError):
    def __init__(self, endpoint: str, max_pages: int):
        self.endpoint = endpoint
        self.max_pages = max_pages
        super().__init__(
            f"Pagination of {endpoint} did not finish within {max_pages} pages. "
            "Set TROCCO_MAX_PAGES to raise the limit."
        )


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True)
class Config:
    api_key: str
    base_url: str = BASE_URL
    timeout: float = 30.0
    max_pages: int = 1000
    log_level: str = "INFO"


def load_config() -> Config:
    """Read settings from the environment, loading a .env file first if present."""
    load_dotenv()
    return Config(
        api_key=os.getenv("TROCCO_API_KEY", "").strip(),
        base_url=os.getenv("TROCCO_BASE_URL", "").strip() or BASE_URL,
        timeout=float(os.getenv("TROCCO_TIMEOUT", "").strip() or 30.0),
        max_pages=int(os.getenv("TROCCO_MAX_PAGES", "").strip() or 1000),
        log_level=(os.getenv("LOG_LEVEL", "").strip() or "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    # stdout carries the MCP stream, so logs go to stderr
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
        stream=sys.stderr,
        force=True,
    )


# ============================================================================
# TRANSPORT
# ============================================================================

class TroccoClient:
    """Authenticated access to the TROCCO REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        max_pages: int = 1000,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_pages = max_pages

    @classmethod
    def from_config(cls, config: Config) -> "TroccoClient":
        if not config.api_key:
            logger.warning("TROCCO_API_KEY is not set; requests will fail to authenticate.")
        return cls(
            config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_pages=config.max_pages,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def get_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "Authorization": f"Token {self._api_key}",
        }

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Any = None,
    ) -> Any:
        """Make a request to the TROCCO API and return the decoded JSON body."""
        method = method.upper()
        if method not in ALLOWED_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")
        url = f"{self._base_url}{endpoint}"
        logger.debug("%s %s params=%s", method, url, params)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self.get_headers(),
                    params=params,
                    json=json_body,
                )
        except httpx.RequestError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise TransportError(f"TROCCO API request error: {e}") from e

        if not response.is_success:
            logger.warning("%s %s returned %s", method, url, response.status_code)
            raise RequestFailed(response.status_code, method, url)

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON in TROCCO API response from {url}: {e}") from e

    async def request_all_pages(
        self,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[Any]:
        """Make paginated GET requests and return the items of every page.

        Follows next_cursor until the service reports no further page. The
        first request uses ``params`` as given, so a caller-supplied cursor
        is the starting point. Any failure aborts the whole aggregation.
        """
        params = dict(params or {})
        all_items: list[Any] = []

        for page in range(1, self._max_pages + 1):
            data = await self.request("GET", endpoint, params=params)
            if not isinstance(data, dict):
                raise TransportError(f"Unexpected paginated response from {endpoint}: {type(data).__name__}")
            all_items.extend(data.get("items") or [])

            next_cursor = data.get("next_cursor")
            if next_cursor is None:
                logger.debug("Fetched %d items from %s in %d pages", len(all_items), endpoint, page)
                return all_items

            params["cursor"] = next_cursor

        raise PaginationLimitExceeded(endpoint, self._max_pages)


def _path(*segments: str) -> str:
    return "".join(f"/{quote(str(segment), safe='')}" for segment in segments)


# ============================================================================
# RESOURCES
# ============================================================================

class ResourceGroup(TypedDict):
    id: int
    name: str
    description: str
    teams: list[dict[str, Any]]


class User(TypedDict):
    id: int
    email: str
    role: str
    can_use_audit_log: bool
    is_restrected_connection_modify: bool
    last_sign_in_at: str
    created_at: str
    updated_at: str


class DatamartDefinitionDetail(TypedDict, total=False):
    id: int
    name: str
    description: str
    data_warehouse_type: str
    is_runnable_concurrently: bool
    resource_group: ResourceGroup
    custom_variable_settings: list[dict[str, Any]]
    datamart_bigquery_option: dict[str, Any]
    datamart_snowflake_setting: dict[str, Any]
    notifications: list[dict[str, Any]]
    schedules: list[dict[str, Any]]
    labels: list[str]
    created_at: str
    updated_at: str


class PipelineDefinitionSummary(TypedDict):
    id: int
    name: str


class PipelineDefinitionDetail(TypedDict):
    id: int
    name: str
    resource_group_id: Optional[int]
    description: str
    max_task_parallelism: int
    execution_timeout: int
    max_retries: int
    min_retry_interval: int
    is_concurrent_execution_skipped: bool
    is_stopped_on_errors: bool
    labels: list[str]
    notifications: list[dict[str, Any]]
    schedules: list[dict[str, Any]]
    tasks: list[dict[str, Any]]
    task_dependencies: list[dict[str, Any]]


# ============================================================================
# TOOL INPUTS
# ============================================================================

class ToolInput(BaseModel):
    model_config = ConfigDict(strict=True)


class ListUsersInput(ToolInput):
    limit: int = Field(50, ge=1, le=200, description="Maximum number of users per page (1-200)")
    cursor: Optional[str] = Field(None, description="Cursor to start listing from")


class GetDatamartDefinitionDetailInput(ToolInput):
    datamart_definition_id: str = Field(..., description="The unique identifier for the datamart definition")


class UpdateDatamartDefinitionDescriptionInput(ToolInput):
    datamart_definition_id: str = Field(..., description="The unique identifier for the datamart definition")
    description: str = Field(..., description="The new description of the datamart definition")


class ListPipelineDefinitionsInput(ToolInput):
    limit: int = Field(50, ge=1, le=200, description="Maximum number of pipeline definitions per page (1-200)")
    cursor: Optional[str] = Field(None, description="Cursor to start listing from")


class GetPipelineDefinitionDetailInput(ToolInput):
    pipeline_definition_id: str = Field(..., description="The unique identifier for the pipeline definition")


# ============================================================================
# OPERATIONS
# ============================================================================

async def list_users(client: TroccoClient, params: ListUsersInput) -> list[User]:
    return await client.request_all_pages("/api/users", params.model_dump(exclude_none=True))


async def get_datamart_definition_detail(
    client: TroccoClient, params: GetDatamartDefinitionDetailInput
) -> DatamartDefinitionDetail:
    endpoint = _path("api", "datamart_definitions", params.datamart_definition_id)
    return await client.request("GET", endpoint)


async def update_datamart_definition_description(
    client: TroccoClient, params: UpdateDatamartDefinitionDescriptionInput
) -> DatamartDefinitionDetail:
    """Replace the description of a datamart definition.

    The API treats PATCH bodies as the new record, so the current record is
    fetched and sent back whole with only ``description`` changed. The two
    requests are not atomic: a change made by someone else in between is
    overwritten.
    """
    endpoint = _path("api", "datamart_definitions", params.datamart_definition_id)
    datamart_definition = await client.request("GET", endpoint)
    datamart_definition["description"] = params.description
    logger.info("Updating description of datamart definition %s", params.datamart_definition_id)
    return await client.request("PATCH", endpoint, json_body=datamart_definition)


async def list_pipeline_definitions(
    client: TroccoClient, params: ListPipelineDefinitionsInput
) -> list[PipelineDefinitionSummary]:
    return await client.request_all_pages("/api/pipeline_definitions", params.model_dump(exclude_none=True))


async def get_pipeline_definition_detail(
    client: TroccoClient, params: GetPipelineDefinitionDetailInput
) -> PipelineDefinitionDetail:
    endpoint = _path("api", "pipeline_definitions", params.pipeline_definition_id)
    return await client.request("GET", endpoint)


# Tool definitions
# Each tool has: description, input_model (validation and advertised schema), handler
TOOLS = {
    "list_users": {
        "description": "List TROCCO users. Automatically fetches all pages.",
        "input_model": ListUsersInput,
        "handler": list_users,
    },
    "get_datamart_definition_detail": {
        "description": "Get TROCCO datamart definition detail.",
        "input_model": GetDatamartDefinitionDetailInput,
        "handler": get_datamart_definition_detail,
    },
    "update_datamart_definition_description": {
        "description": "⚠️ WRITE OPERATION - Update TROCCO datamart definition description. Other settings are kept as they are.",
        "input_model": UpdateDatamartDefinitionDescriptionInput,
        "handler": update_datamart_definition_description,
    },
    "list_pipeline_definitions": {
        "description": "List TROCCO pipeline definitions. Automatically fetches all pages.",
        "input_model": ListPipelineDefinitionsInput,
        "handler": list_pipeline_definitions,
    },
    "get_pipeline_definition_detail": {
        "description": "Get TROCCO pipeline definition detail.",
        "input_model": GetPipelineDefinitionDetailInput,
        "handler": get_pipeline_definition_detail,
    },
}


# ============================================================================
# DISPATCH
# ============================================================================

def build_tool_schema(tool_name: str, tool_config: dict) -> Tool:
    """Build a Tool whose input schema is generated from its input model."""
    return Tool(
        name=tool_name,
        description=tool_config["description"],
        inputSchema=tool_config["input_model"].model_json_schema(),
    )


async def list_tools() -> list[Tool]:
    """List available TROCCO tools."""
    return [build_tool_schema(name, config) for name, config in TOOLS.items()]


async def execute_tool(
    client: TroccoClient, name: str, arguments: Optional[dict[str, Any]]
) -> Any:
    """Validate the arguments and run the tool's operation."""
    if name not in TOOLS:
        raise UnknownTool(name)
    if arguments is None:
        raise MissingArguments(name)

    tool_config = TOOLS[name]
    try:
        params = tool_config["input_model"].model_validate(arguments)
    except ValidationError as e:
        raise InvalidArguments(name, e.errors(include_url=False)) from e

    return await tool_config["handler"](client, params)


def _format_result(result: Any) -> str:
    return json.dumps(result, indent=2, ensure_ascii=False)


async def call_tool(
    client: TroccoClient, name: str, arguments: Optional[dict[str, Any]]
) -> list[TextContent]:
    """Handle a tool call, returning the result as a single JSON text block."""
    try:
        result = await execute_tool(client, name, arguments)
    except TroccoError as e:
        logger.warning("Tool %s failed: %s", name, e)
        raise
    return [TextContent(type="text", text=_format_result(result))]


def create_server(client: TroccoClient) -> Server:
    """Create the MCP server with every tool bound to ``client``."""
    server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def handle_list_tools() -> list[Tool]:
        return await list_tools()

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        return await call_tool(client, name, arguments)

    return server


async def main(config: Optional[Config] = None):
    """Run the MCP server."""
    config = config or load_config()
    server = create_server(TroccoClient.from_config(config))
    async with stdio_server() as (read_stream, write_stream):
        logger.info("TROCCO MCP Server running on stdio")
        await server.run(read_stream, write_stream, server.create_initialization_options())


def run() -> None:
    import asyncio

    configure_logging()
    try:
        config = load_config()
        configure_logging(config.log_level)
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.exception("Fatal error in main()")
        sys.exit(1)


if __name__ == "__main__":
    run()
