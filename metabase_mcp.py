from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Type,
)
import asyncio
import json
import logging
import os
import re
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import wraps

import httpx
import mcp.types as types
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from mcp.shared.exceptions import McpError
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveInt,
    ValidationError,
    model_validator,
)

"""
Metabase MCP Integration

This module provides a Model Context Protocol (MCP) server for Metabase,
letting AI assistants browse and edit a Metabase instance through its REST API.

It includes:
- Session handling with either an API key or a username/password login
- Resources for dashboards, questions (cards) and databases
- Dashboard operations (list, create, update, archive/delete)
- Card operations (list, execute, create, update, archive/delete)
- Dashboard card placement (add, move/resize, remove, dashboard-only cards)
- Database browsing and native query execution (SQL and MongoDB pipelines)

Every tool maps onto one or two Metabase API calls; nothing is stored locally
apart from the session token.
"""

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger("metabase_mcp")

# Constants
SERVER_NAME = "metabase"
JSON_MIME_TYPE = "application/json"
DEFAULT_TIMEOUT = 30.0
API_KEY_SENTINEL = "api_key_used"
MONGO_ENGINE = "mongo"
# Metabase assigns real ids to dashcards sent with a negative id
NEW_DASHCARD_ID = -1


# ===== Errors =====


class ConfigurationError(Exception):
    """Raised when the Metabase connection settings are missing or inconsistent"""


class MetabaseAPIError(Exception):
    """A Metabase API call failed, either in transport or with a non-2xx status"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationError(McpError):
    """Login against /api/session failed; no session token was stored"""

    def __init__(self, message: str = "Failed to authenticate with Metabase"):
        super().__init__(types.ErrorData(code=types.INTERNAL_ERROR, message=message))


def protocol_error(code: int, message: str) -> McpError:
    return McpError(types.ErrorData(code=code, message=message))


# ===== Configuration =====


@dataclass(frozen=True)
class MetabaseConfig:
    """Connection settings for one Metabase instance"""

    url: str
    api_key: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT

    @property
    def uses_api_key(self) -> bool:
        return bool(self.api_key)


def load_config(environ: Optional[Mapping[str, str]] = None) -> MetabaseConfig:
    """
    Build the Metabase configuration from environment variables

    Reads METABASE_URL plus either METABASE_API_KEY or the pair
    METABASE_USERNAME / METABASE_PASSWORD. When an API key is present it takes
    precedence over any username and password. METABASE_TIMEOUT optionally sets
    the HTTP timeout in seconds.

    Args:
        environ: Mapping to read from instead of os.environ

    Raises:
        ConfigurationError: if the URL is missing, neither auth mode is fully
            specified, or the timeout is not a number
    """
    env = os.environ if environ is None else environ

    url = (env.get("METABASE_URL") or "").strip().rstrip("/")
    api_key = env.get("METABASE_API_KEY") or None
    username = env.get("METABASE_USERNAME") or None
    password = env.get("METABASE_PASSWORD") or None

    if not url:
        raise ConfigurationError("METABASE_URL environment variable is required")

    if not api_key and not (username and password):
        raise ConfigurationError(
            "Either METABASE_API_KEY or both METABASE_USERNAME and "
            "METABASE_PASSWORD environment variables are required"
        )

    raw_timeout = env.get("METABASE_TIMEOUT")
    try:
        timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT
    except ValueError:
        raise ConfigurationError(
            f"METABASE_TIMEOUT must be a number of seconds, got {raw_timeout!r}"
        ) from None

    return MetabaseConfig(
        url=url,
        api_key=api_key,
        username=username,
        password=password,
        timeout=timeout,
    )


# ===== Context and HTTP Client =====


@dataclass
class MetabaseContext:
    """Typed context for the Metabase MCP server"""

    client: httpx.AsyncClient
    config: MetabaseConfig
    session_token: Optional[str] = None

    @property
    def base_url(self) -> str:
        return self.config.url


def build_client(
    config: MetabaseConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    headers = {"Content-Type": JSON_MIME_TYPE}
    if config.uses_api_key:
        headers["X-API-Key"] = config.api_key

    return httpx.AsyncClient(
        base_url=config.url,
        headers=headers,
        timeout=config.timeout,
        transport=transport,
    )


def create_context(
    config: MetabaseConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> MetabaseContext:
    """Create the HTTP client and pick the authentication mode"""
    ctx = MetabaseContext(client=build_client(config, transport), config=config)

    if config.uses_api_key:
        logger.info("Using Metabase API key for authentication")
        if config.username or config.password:
            logger.info("METABASE_API_KEY is set; ignoring username/password")
        ctx.session_token = API_KEY_SENTINEL
    else:
        logger.info("Using Metabase username/password for authentication")

    return ctx


def make_lifespan(config: MetabaseConfig):
    @asynccontextmanager
    async def metabase_lifespan(server: FastMCP) -> AsyncIterator[MetabaseContext]:
        """Manage application lifecycle for Metabase integration"""
        logger.info("Initializing Metabase context for %s", config.url)
        ctx = create_context(config)

        try:
            yield ctx
        finally:
            logger.info("Shutting down Metabase context...")
            await ctx.client.aclose()

    return metabase_lifespan


# ===== Session Management =====


async def ensure_session(metabase_ctx: MetabaseContext) -> str:
    """
    Return the credential used for Metabase calls, logging in on first use

    In API-key mode this is the API-key sentinel and no request is made. In
    username/password mode the first call posts to /api/session, stores the
    returned session id and installs it as the X-Metabase-Session header;
    later calls reuse it. A failed login stores nothing, so the next call
    tries again.

    Concurrent first calls are not serialized and may each log in.

    Raises:
        AuthenticationError: if the login request fails or returns no session id
    """
    if metabase_ctx.session_token:
        return metabase_ctx.session_token

    config = metabase_ctx.config
    logger.info("Authenticating with Metabase using username/password...")

    try:
        response = await metabase_ctx.client.post(
            "/api/session",
            json={"username": config.username, "password": config.password},
        )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Authentication failed: %s", e)
        raise AuthenticationError() from e

    token = data.get("id") if isinstance(data, dict) else None
    if not token:
        logger.error("Authentication failed: login response carried no session id")
        raise AuthenticationError()

    metabase_ctx.session_token = token
    metabase_ctx.client.headers["X-Metabase-Session"] = token
    logger.info("Successfully authenticated with Metabase")
    return token


# ===== Helper Functions and Decorators =====


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"Request failed with status code {response.status_code}"


async def make_api_request(
    metabase_ctx: MetabaseContext,
    method: str,
    endpoint: str,
    data: Any = None,
    params: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    Helper function to make API requests to Metabase

    Args:
        metabase_ctx: Metabase context holding the HTTP client
        method: HTTP method (get, post, put, delete)
        endpoint: API endpoint (without base URL)
        data: Optional JSON payload for POST/PUT requests
        params: Optional query parameters

    Returns:
        The decoded JSON body, the raw text for non-JSON bodies, or None when
        the response is empty

    Raises:
        MetabaseAPIError: on transport failure or a non-2xx response
    """
    method = method.upper()
    if method not in ("GET", "POST", "PUT", "DELETE"):
        raise ValueError(f"Unsupported HTTP method: {method}")

    try:
        response = await metabase_ctx.client.request(
            method, endpoint, json=data, params=params
        )
    except httpx.HTTPError as e:
        logger.error("%s %s failed: %s", method, endpoint, e)
        raise MetabaseAPIError(str(e) or type(e).__name__) from e

    if not response.is_success:
        message = _error_message(response)
        logger.error(
            "%s %s returned %s: %s", method, endpoint, response.status_code, message
        )
        raise MetabaseAPIError(message, status_code=response.status_code)

    if not response.content:
        return None

    try:
        return response.json()
    except ValueError:
        return response.text


def format_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


def json_result(data: Any) -> types.CallToolResult:
    return text_result(format_json(data))


ToolHandler = Callable[[MetabaseContext, Any], Awaitable[types.CallToolResult]]


def handle_api_errors(func: ToolHandler) -> ToolHandler:
    """Decorator reporting Metabase API failures in-band as error results"""

    @wraps(func)
    async def wrapper(metabase_ctx: MetabaseContext, arguments: Any) -> types.CallToolResult:
        try:
            return await func(metabase_ctx, arguments)
        except MetabaseAPIError as e:
            return text_result(f"Metabase API error: {e.message}", is_error=True)

    return wrapper


def format_validation_error(tool_name: str, error: ValidationError) -> str:
    problems = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        if detail["type"] == "missing":
            problems.append(f"missing required field '{location}'")
        elif location:
            problems.append(f"{location}: {detail['msg']}")
        else:
            problems.append(detail["msg"].removeprefix("Value error, "))

    return f"Invalid arguments for {tool_name}: {'; '.join(problems)}"


# ===== Tool Registry =====


@dataclass(frozen=True)
class ToolDefinition:
    tool: types.Tool
    arguments: Type[BaseModel]
    handler: ToolHandler


TOOL_REGISTRY: Dict[str, ToolDefinition] = {}


def metabase_tool(
    arguments: Type[BaseModel], description: str, input_schema: Dict[str, Any]
) -> Callable[[ToolHandler], ToolHandler]:
    """Register a tool handler under its function name"""

    def decorator(func: ToolHandler) -> ToolHandler:
        name = func.__name__
        TOOL_REGISTRY[name] = ToolDefinition(
            tool=types.Tool(name=name, description=description, inputSchema=input_schema),
            arguments=arguments,
            handler=func,
        )
        return func

    return decorator


def list_tools() -> List[types.Tool]:
    return [definition.tool for definition in TOOL_REGISTRY.values()]


def _object_schema(
    properties: Dict[str, Any], required: Optional[List[str]] = None
) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _number(description: str, **extra: Any) -> Dict[str, Any]:
    return {"type": "number", "description": description, **extra}


def _string(description: str) -> Dict[str, Any]:
    return {"type": "string", "description": description}


def _object(description: str) -> Dict[str, Any]:
    return {"type": "object", "additionalProperties": True, "description": description}


def _array_of_objects(description: str) -> Dict[str, Any]:
    return {"type": "array", "description": description, "items": {"type": "object"}}


MONGO_QUERY_FORMAT = (
    'For MongoDB queries, use format: {"database": 4, "lib/type": "mbql/query", '
    '"stages": [{"collection": "collection-name", "lib/type": "mbql.stage/native", '
    '"native": "[{...}]"}]}.'
)

MONGO_DATE_FILTER_HINT = (
    "For MongoDB date filtering with template tags: use string comparison instead "
    "of date objects. Convert dates to ISO strings with $dateToString, then use "
    'template tags WITHOUT quotes in the query (e.g., {"$gte": {{date_start}}}). '
    "Set template tag defaults WITH quotes (e.g., default: "
    "'\"2020-01-01T00:00:00.000Z\"'). This allows Metabase to properly substitute "
    "date values from dashboard parameters."
)

DATASET_QUERY_DESCRIPTION = (
    'The query for the card. For MongoDB: {"database": 4, "lib/type": "mbql/query", '
    '"stages": [{"collection": "collection-name", "lib/type": "mbql.stage/native", '
    '"native": "[{...}]"}]}'
)

DISPLAY_DESCRIPTION = "Display type (e.g., 'table', 'line', 'bar', 'pie', 'scalar')"

VISUALIZATION_SETTINGS_DESCRIPTION = (
    'Settings for the visualization (e.g., {"graph.dimensions": ["field"], '
    '"graph.metrics": ["count"]})'
)

GRID_PROPERTIES = {
    "row": _number("Row position (default: 0)", default=0),
    "col": _number("Column position (default: 0)", default=0),
    "size_x": _number("Width in grid units (default: 4)", default=4),
    "size_y": _number("Height in grid units (default: 4)", default=4),
}


# ===== Tool Arguments =====


class ToolArguments(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def supplied_fields(self) -> Dict[str, Any]:
        """Top-level fields that were given a value; nested values are kept as is"""
        return {key: value for key, value in self.model_dump().items() if value is not None}


class NoArguments(ToolArguments):
    pass


class ListCardsArguments(ToolArguments):
    f: str = "all"


class DatabaseArguments(ToolArguments):
    database_id: PositiveInt


class DashboardArguments(ToolArguments):
    dashboard_id: PositiveInt


class ExecuteCardArguments(ToolArguments):
    card_id: PositiveInt
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ExecuteQueryArguments(ToolArguments):
    database_id: PositiveInt
    query: str = Field(min_length=1)
    collection: Optional[str] = None
    native_parameters: List[Dict[str, Any]] = Field(default_factory=list)


class CreateCardArguments(ToolArguments):
    name: str = Field(min_length=1)
    dataset_query: Dict[str, Any]
    display: str = Field(min_length=1)
    visualization_settings: Dict[str, Any]
    collection_id: Optional[int] = None
    description: Optional[str] = None


class UpdateArguments(ToolArguments):
    """Update models: an id field plus at least one field to send"""

    id_field: ClassVar[str] = ""

    def update_fields(self) -> Dict[str, Any]:
        fields = self.model_dump(exclude_unset=True, exclude={self.id_field})
        fields.update(self.model_extra or {})
        return fields

    @model_validator(mode="after")
    def require_update_fields(self):
        if not self.update_fields():
            raise ValueError(f"No fields provided to update besides {self.id_field}")
        return self


class UpdateCardArguments(UpdateArguments):
    id_field: ClassVar[str] = "card_id"
    # undeclared card attributes are sent to Metabase as given
    model_config = ConfigDict(extra="allow")

    card_id: PositiveInt
    name: Optional[str] = None
    dataset_query: Optional[Dict[str, Any]] = None
    display: Optional[str] = None
    visualization_settings: Optional[Dict[str, Any]] = None
    collection_id: Optional[int] = None
    description: Optional[str] = None
    archived: Optional[bool] = None


class DeleteCardArguments(ToolArguments):
    card_id: PositiveInt
    hard_delete: bool = False


class CreateDashboardArguments(ToolArguments):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    parameters: Optional[List[Dict[str, Any]]] = None
    collection_id: Optional[int] = None


class UpdateDashboardArguments(UpdateArguments):
    id_field: ClassVar[str] = "dashboard_id"
    model_config = ConfigDict(extra="allow")

    dashboard_id: PositiveInt
    name: Optional[str] = None
    description: Optional[str] = None
    parameters: Optional[List[Dict[str, Any]]] = None
    collection_id: Optional[int] = None
    archived: Optional[bool] = None


class DeleteDashboardArguments(ToolArguments):
    dashboard_id: PositiveInt
    hard_delete: bool = False


class GridPlacement(ToolArguments):
    row: NonNegativeInt = 0
    col: NonNegativeInt = 0
    size_x: PositiveInt = 4
    size_y: PositiveInt = 4


class AddCardToDashboardArguments(GridPlacement):
    dashboard_id: PositiveInt
    card_id: PositiveInt
    dashboard_tab_id: Optional[int] = None


class RemoveCardFromDashboardArguments(ToolArguments):
    dashboard_id: PositiveInt
    dashcard_id: PositiveInt


class UpdateDashboardCardArguments(UpdateArguments):
    id_field: ClassVar[str] = "dashcard_id"

    dashboard_id: PositiveInt
    dashcard_id: PositiveInt
    row: Optional[NonNegativeInt] = None
    col: Optional[NonNegativeInt] = None
    size_x: Optional[PositiveInt] = None
    size_y: Optional[PositiveInt] = None
    parameter_mappings: Optional[List[Dict[str, Any]]] = None

    def update_fields(self) -> Dict[str, Any]:
        return self.model_dump(
            exclude_unset=True,
            exclude_none=True,
            exclude={"dashboard_id", "dashcard_id"},
        )


class CreateDashboardOnlyCardArguments(GridPlacement):
    dashboard_id: PositiveInt
    name: str = Field(min_length=1)
    dataset_query: Dict[str, Any]
    display: str = Field(min_length=1)
    visualization_settings: Dict[str, Any]


# ===== Dashcard Helpers =====


def format_dashcard(dashcard: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a dashcard from GET /api/dashboard/:id to the shape PUT .../cards accepts"""
    formatted = {
        "id": dashcard.get("id"),
        "card_id": dashcard.get("card_id"),
        "row": dashcard.get("row"),
        "col": dashcard.get("col"),
        "size_x": dashcard.get("size_x"),
        "size_y": dashcard.get("size_y"),
        "series": dashcard.get("series") or [],
        "visualization_settings": dashcard.get("visualization_settings") or {},
        "parameter_mappings": dashcard.get("parameter_mappings") or [],
    }
    if dashcard.get("dashboard_tab_id") is not None:
        formatted["dashboard_tab_id"] = dashcard["dashboard_tab_id"]
    return formatted


def new_dashcard_id(dashcards: List[Dict[str, Any]]) -> int:
    taken = [
        dc["id"] for dc in dashcards if isinstance(dc.get("id"), int) and dc["id"] < 0
    ]
    return min([NEW_DASHCARD_ID + 1] + taken) - 1


async def fetch_dashcards(
    metabase_ctx: MetabaseContext, dashboard_id: int
) -> List[Dict[str, Any]]:
    dashboard = await make_api_request(metabase_ctx, "get", f"/api/dashboard/{dashboard_id}")
    return [format_dashcard(dc) for dc in (dashboard or {}).get("dashcards") or []]


async def save_dashcards(
    metabase_ctx: MetabaseContext, dashboard_id: int, dashcards: List[Dict[str, Any]]
) -> Any:
    # PUT /cards replaces the whole list; omitted dashcards are removed
    return await make_api_request(
        metabase_ctx,
        "put",
        f"/api/dashboard/{dashboard_id}/cards",
        data={"cards": dashcards},
    )


async def archive_or_delete(
    metabase_ctx: MetabaseContext,
    label: str,
    endpoint: str,
    entity_id: int,
    hard_delete: bool,
) -> types.CallToolResult:
    if hard_delete:
        await make_api_request(metabase_ctx, "delete", endpoint)
        return text_result(f"{label} {entity_id} permanently deleted.")

    response = await make_api_request(metabase_ctx, "put", endpoint, data={"archived": True})
    if response:
        return text_result(f"{label} {entity_id} archived. Details: {format_json(response)}")
    return text_result(f"{label} {entity_id} archived.")


def with_link(created: Any, link: str, label: str) -> Dict[str, Any]:
    return {
        **(created or {}),
        "_link": link,
        "_message": f"{label} created successfully! View it at: {link}",
    }


# ===== Listing Tools =====


@metabase_tool(
    NoArguments,
    description="List all dashboards in Metabase",
    input_schema=_object_schema({}),
)
@handle_api_errors
async def list_dashboards(metabase_ctx: MetabaseContext, args: NoArguments) -> types.CallToolResult:
    return json_result(await make_api_request(metabase_ctx, "get", "/api/dashboard"))


@metabase_tool(
    ListCardsArguments,
    description="List all questions/cards in Metabase",
    input_schema=_object_schema(
        {
            "f": _string(
                "Optional filter function, possible values: archived, table, "
                "database, using_model, bookmarked, using_segment, all, mine"
            )
        }
    ),
)
@handle_api_errors
async def list_cards(metabase_ctx: MetabaseContext, args: ListCardsArguments) -> types.CallToolResult:
    """
    Get a list of cards (saved questions)

    Makes a request to the /api/card endpoint with the `f` filter as a query
    parameter; `all` returns every card the current user can see.
    """
    return json_result(
        await make_api_request(
            metabase_ctx, "get", "/api/card", params={"f": args.f or "all"}
        )
    )


@metabase_tool(
    NoArguments,
    description="List all databases in Metabase",
    input_schema=_object_schema({}),
)
@handle_api_errors
async def list_databases(metabase_ctx: MetabaseContext, args: NoArguments) -> types.CallToolResult:
    return json_result(await make_api_request(metabase_ctx, "get", "/api/database"))


@metabase_tool(
    NoArguments,
    description="List all collections in Metabase",
    input_schema=_object_schema({}),
)
@handle_api_errors
async def list_collections(metabase_ctx: MetabaseContext, args: NoArguments) -> types.CallToolResult:
    return json_result(await make_api_request(metabase_ctx, "get", "/api/collection"))


# ===== Database Tools =====


@metabase_tool(
    DatabaseArguments,
    description=(
        "Get detailed information about a specific Metabase database "
        "including tables and schema"
    ),
    input_schema=_object_schema(
        {"database_id": _number("ID of the database")}, required=["database_id"]
    ),
)
@handle_api_errors
async def get_database(metabase_ctx: MetabaseContext, args: DatabaseArguments) -> types.CallToolResult:
    return json_result(
        await make_api_request(metabase_ctx, "get", f"/api/database/{args.database_id}")
    )


@metabase_tool(
    DatabaseArguments,
    description=(
        "Get complete metadata for a database including all tables, fields, "
        "and schema information"
    ),
    input_schema=_object_schema(
        {"database_id": _number("ID of the database")}, required=["database_id"]
    ),
)
@handle_api_errors
async def get_database_metadata(
    metabase_ctx: MetabaseContext, args: DatabaseArguments
) -> types.CallToolResult:
    """
    Get the table and field layout of a database

    Makes a request to the /api/database/{id}/metadata endpoint and keeps only
    what is needed to write queries: the database id and name, each table's id
    and name, and each field's id, name and native database type. Field
    statistics, fingerprints and sync timestamps are dropped.

    Args:
        database_id: ID of the database to describe

    Returns:
        The reduced metadata document as JSON text
    """
    metadata = await make_api_request(
        metabase_ctx, "get", f"/api/database/{args.database_id}/metadata"
    ) or {}

    return json_result(
        {
            "id": metadata.get("id"),
            "name": metadata.get("name"),
            "tables": [
                {
                    "id": table.get("id"),
                    "name": table.get("name"),
                    "fields": [
                        {
                            "id": field.get("id"),
                            "name": field.get("name"),
                            "database_type": field.get("database_type"),
                        }
                        for field in table.get("fields") or []
                    ],
                }
                for table in metadata.get("tables") or []
            ],
        }
    )


# ===== Query Tools =====


@metabase_tool(
    ExecuteCardArguments,
    description="Execute a Metabase question/card and get results",
    input_schema=_object_schema(
        {
            "card_id": _number("ID of the card/question to execute"),
            "parameters": {
                "type": "object",
                "description": "Optional parameters for the query",
            },
        },
        required=["card_id"],
    ),
)
@handle_api_errors
async def execute_card(metabase_ctx: MetabaseContext, args: ExecuteCardArguments) -> types.CallToolResult:
    return json_result(
        await make_api_request(
            metabase_ctx,
            "post",
            f"/api/card/{args.card_id}/query",
            data={"parameters": args.parameters},
        )
    )


@metabase_tool(
    ExecuteQueryArguments,
    description=(
        "Execute a SQL query against a Metabase database, or MongoDB aggregation "
        "pipeline against MongoDB databases"
    ),
    input_schema=_object_schema(
        {
            "database_id": _number("ID of the database to query"),
            "query": _string(
                "SQL query for SQL databases, or MongoDB aggregation pipeline as "
                "JSON string (e.g., '[{\"$limit\": 10}]') for MongoDB databases"
            ),
            "collection": _string(
                "MongoDB collection name (required for MongoDB databases, e.g., "
                "'kpj-user-profiles'). Ignored for SQL databases."
            ),
            "native_parameters": _array_of_objects("Optional parameters for the query"),
        },
        required=["database_id", "query"],
    ),
)
@handle_api_errors
async def execute_query(metabase_ctx: MetabaseContext, args: ExecuteQueryArguments) -> types.CallToolResult:
    """
    Run a native query through /api/dataset

    The database record is read first so the native body can be shaped for its
    engine: MongoDB databases need the target collection next to the pipeline,
    SQL databases take the query text alone.

    Args:
        database_id: ID of the database to query
        query: SQL text, or a MongoDB aggregation pipeline as a JSON string
        collection: MongoDB collection; required when the engine is mongo
        native_parameters: Optional native query parameters

    Raises:
        McpError: INVALID_PARAMS when a MongoDB database is queried without a collection
    """
    database = await make_api_request(metabase_ctx, "get", f"/api/database/{args.database_id}")
    engine = (database or {}).get("engine")

    if engine == MONGO_ENGINE:
        if not args.collection:
            raise protocol_error(
                types.INVALID_PARAMS, "Collection name is required for MongoDB queries"
            )
        native = {"collection": args.collection, "query": args.query, "template_tags": {}}
    else:
        native = {"query": args.query, "template_tags": {}}

    return json_result(
        await make_api_request(
            metabase_ctx,
            "post",
            "/api/dataset",
            data={
                "type": "native",
                "native": native,
                "parameters": args.native_parameters,
                "database": args.database_id,
            },
        )
    )


# ===== Card Tools =====


@metabase_tool(
    CreateCardArguments,
    description=(
        "Create a new Metabase question (card) that will appear in collections. "
        "For dashboard-only cards, use create_dashboard_only_card instead. "
        f"{MONGO_QUERY_FORMAT} {MONGO_DATE_FILTER_HINT}"
    ),
    input_schema=_object_schema(
        {
            "name": _string("Name of the card"),
            "dataset_query": _object(DATASET_QUERY_DESCRIPTION),
            "display": _string(DISPLAY_DESCRIPTION),
            "visualization_settings": _object(VISUALIZATION_SETTINGS_DESCRIPTION),
            "collection_id": _number("Optional ID of the collection to save the card in"),
            "description": _string("Optional description for the card"),
        },
        required=["name", "dataset_query", "display", "visualization_settings"],
    ),
)
@handle_api_errors
async def create_card(metabase_ctx: MetabaseContext, args: CreateCardArguments) -> types.CallToolResult:
    """
    Create a new card (saved question)

    Makes a request to the /api/card POST endpoint. Optional fields are only
    sent when supplied. The response is returned with a `_link` to the new
    question and a short `_message` for the user.
    """
    created = await make_api_request(
        metabase_ctx, "post", "/api/card", data=args.supplied_fields()
    )
    link = f"{metabase_ctx.base_url}/question/{(created or {}).get('id')}"
    return json_result(with_link(created, link, "Card"))


@metabase_tool(
    UpdateCardArguments,
    description=(f"Update an existing Metabase question (card). {MONGO_DATE_FILTER_HINT}"),
    input_schema=_object_schema(
        {
            "card_id": _number("ID of the card to update"),
            "name": _string("New name for the card"),
            "dataset_query": {"type": "object", "description": "New query for the card"},
            "display": _string("New display type"),
            "visualization_settings": {
                "type": "object",
                "description": "New visualization settings",
            },
            "collection_id": _number("New collection ID"),
            "description": _string("New description"),
            "archived": {
                "type": "boolean",
                "description": "Set to true to archive the card",
            },
        },
        required=["card_id"],
    ),
)
@handle_api_errors
async def update_card(metabase_ctx: MetabaseContext, args: UpdateCardArguments) -> types.CallToolResult:
    return json_result(
        await make_api_request(
            metabase_ctx, "put", f"/api/card/{args.card_id}", data=args.update_fields()
        )
    )


@metabase_tool(
    DeleteCardArguments,
    description="Delete a Metabase question (card).",
    input_schema=_object_schema(
        {
            "card_id": _number("ID of the card to delete"),
            "hard_delete": {
                "type": "boolean",
                "description": "Set to true for hard delete, false (default) for archive",
                "default": False,
            },
        },
        required=["card_id"],
    ),
)
@handle_api_errors
async def delete_card(metabase_ctx: MetabaseContext, args: DeleteCardArguments) -> types.CallToolResult:
    """
    Archive or permanently delete a card

    By default the card is archived with PUT {archived: true} and can be
    restored from the Metabase trash. With hard_delete the card is removed with
    DELETE /api/card/{id}, which cannot be undone.
    """
    return await archive_or_delete(
        metabase_ctx, "Card", f"/api/card/{args.card_id}", args.card_id, args.hard_delete
    )


# ===== Dashboard Tools =====


@metabase_tool(
    CreateDashboardArguments,
    description="Create a new Metabase dashboard.",
    input_schema=_object_schema(
        {
            "name": _string("Name of the dashboard"),
            "description": _string("Optional description for the dashboard"),
            "parameters": _array_of_objects("Optional parameters for the dashboard"),
            "collection_id": _number(
                "Optional ID of the collection to save the dashboard in"
            ),
        },
        required=["name"],
    ),
)
@handle_api_errors
async def create_dashboard(
    metabase_ctx: MetabaseContext, args: CreateDashboardArguments
) -> types.CallToolResult:
    created = await make_api_request(
        metabase_ctx, "post", "/api/dashboard", data=args.supplied_fields()
    )
    link = f"{metabase_ctx.base_url}/dashboard/{(created or {}).get('id')}"
    return json_result(with_link(created, link, "Dashboard"))


@metabase_tool(
    UpdateDashboardArguments,
    description="Update an existing Metabase dashboard.",
    input_schema=_object_schema(
        {
            "dashboard_id": _number("ID of the dashboard to update"),
            "name": _string("New name for the dashboard"),
            "description": _string("New description for the dashboard"),
            "parameters": _array_of_objects("New parameters for the dashboard"),
            "collection_id": _number("New collection ID"),
            "archived": {
                "type": "boolean",
                "description": "Set to true to archive the dashboard",
            },
        },
        required=["dashboard_id"],
    ),
)
@handle_api_errors
async def update_dashboard(
    metabase_ctx: MetabaseContext, args: UpdateDashboardArguments
) -> types.CallToolResult:
    return json_result(
        await make_api_request(
            metabase_ctx,
            "put",
            f"/api/dashboard/{args.dashboard_id}",
            data=args.update_fields(),
        )
    )


@metabase_tool(
    DeleteDashboardArguments,
    description="Delete a Metabase dashboard.",
    input_schema=_object_schema(
        {
            "dashboard_id": _number("ID of the dashboard to delete"),
            "hard_delete": {
                "type": "boolean",
                "description": "Set to true for hard delete, false (default) for archive",
                "default": False,
            },
        },
        required=["dashboard_id"],
    ),
)
@handle_api_errors
async def delete_dashboard(
    metabase_ctx: MetabaseContext, args: DeleteDashboardArguments
) -> types.CallToolResult:
    return await archive_or_delete(
        metabase_ctx,
        "Dashboard",
        f"/api/dashboard/{args.dashboard_id}",
        args.dashboard_id,
        args.hard_delete,
    )


# ===== Dashboard Card Tools =====


@metabase_tool(
    DashboardArguments,
    description="Get all cards in a dashboard",
    input_schema=_object_schema(
        {"dashboard_id": _number("ID of the dashboard")}, required=["dashboard_id"]
    ),
)
@handle_api_errors
async def get_dashboard_cards(
    metabase_ctx: MetabaseContext, args: DashboardArguments
) -> types.CallToolResult:
    dashboard = await make_api_request(
        metabase_ctx, "get", f"/api/dashboard/{args.dashboard_id}"
    ) or {}
    # older Metabase versions call the list "cards"
    return json_result(dashboard.get("dashcards") or dashboard.get("cards") or [])


@metabase_tool(
    AddCardToDashboardArguments,
    description="Add an existing card to a dashboard.",
    input_schema=_object_schema(
        {
            "dashboard_id": _number("ID of the dashboard to add the card to"),
            "card_id": _number("ID of the card to add"),
            **GRID_PROPERTIES,
            "dashboard_tab_id": _number(
                "ID of the dashboard tab to add the card to (optional)"
            ),
        },
        required=["dashboard_id", "card_id"],
    ),
)
@handle_api_errors
async def add_card_to_dashboard(
    metabase_ctx: MetabaseContext, args: AddCardToDashboardArguments
) -> types.CallToolResult:
    """
    Place an existing card on a dashboard

    Metabase only accepts the complete dashcard list on PUT
    /api/dashboard/{id}/cards, so the current list is read, every entry is
    rewritten in the accepted shape, and the new placement is appended with a
    negative placeholder id for Metabase to replace.

    Args:
        dashboard_id: ID of the dashboard to add the card to
        card_id: ID of the card to place
        row, col: Grid position (default 0, 0)
        size_x, size_y: Grid size (default 4 x 4)
        dashboard_tab_id: Optional tab to place the card on

    Returns:
        Metabase's response to the list update
    """
    dashcards = await fetch_dashcards(metabase_ctx, args.dashboard_id)

    placement = {
        "id": new_dashcard_id(dashcards),
        "card_id": args.card_id,
        "row": args.row,
        "col": args.col,
        "size_x": args.size_x,
        "size_y": args.size_y,
        "series": [],
        "visualization_settings": {},
        "parameter_mappings": [],
    }
    if args.dashboard_tab_id is not None:
        placement["dashboard_tab_id"] = args.dashboard_tab_id

    return json_result(
        await save_dashcards(metabase_ctx, args.dashboard_id, dashcards + [placement])
    )


@metabase_tool(
    RemoveCardFromDashboardArguments,
    description=(
        "Remove a card from a dashboard (does not delete the card itself, just "
        "removes it from the dashboard)."
    ),
    input_schema=_object_schema(
        {
            "dashboard_id": _number("ID of the dashboard"),
            "dashcard_id": _number(
                "ID of the dashboard card (dashcard) to remove. Use "
                "get_dashboard_cards to find this ID."
            ),
        },
        required=["dashboard_id", "dashcard_id"],
    ),
)
@handle_api_errors
async def remove_card_from_dashboard(
    metabase_ctx: MetabaseContext, args: RemoveCardFromDashboardArguments
) -> types.CallToolResult:
    await make_api_request(
        metabase_ctx,
        "delete",
        f"/api/dashboard/{args.dashboard_id}/cards/{args.dashcard_id}",
    )
    return text_result(
        f"Card {args.dashcard_id} removed from dashboard {args.dashboard_id}."
    )


@metabase_tool(
    UpdateDashboardCardArguments,
    description=(
        "Update the position, size, or parameter mappings of a card in a dashboard. "
        "For date filtering: ensure card template tags are configured correctly "
        "(see create_card/update_card descriptions), then use parameter_mappings to "
        "connect dashboard date parameters to card template tags. Example mapping: "
        '[{"parameter_id": "date_start_param", "target": ["variable", '
        '["template-tag", "date_start"]], "card_id": 99}]'
    ),
    input_schema=_object_schema(
        {
            "dashboard_id": _number("ID of the dashboard"),
            "dashcard_id": _number("ID of the dashboard card to update"),
            "row": _number("New row position"),
            "col": _number("New column position"),
            "size_x": _number("New width in grid units"),
            "size_y": _number("New height in grid units"),
            "parameter_mappings": _array_of_objects(
                "Parameter mappings to connect dashboard filters to card template tags"
            ),
        },
        required=["dashboard_id", "dashcard_id"],
    ),
)
@handle_api_errors
async def update_dashboard_card(
    metabase_ctx: MetabaseContext, args: UpdateDashboardCardArguments
) -> types.CallToolResult:
    dashcards = await fetch_dashcards(metabase_ctx, args.dashboard_id)

    target = next((dc for dc in dashcards if dc["id"] == args.dashcard_id), None)
    if target is None:
        return text_result(
            f"Dashcard {args.dashcard_id} not found on dashboard {args.dashboard_id}.",
            is_error=True,
        )

    target.update(args.update_fields())

    return json_result(await save_dashcards(metabase_ctx, args.dashboard_id, dashcards))


@metabase_tool(
    CreateDashboardOnlyCardArguments,
    description=(
        "Create a virtual card that exists only within a dashboard and does not "
        "appear in any collection. This is useful for dashboard-specific "
        f"visualizations. {MONGO_QUERY_FORMAT} {MONGO_DATE_FILTER_HINT}"
    ),
    input_schema=_object_schema(
        {
            "dashboard_id": _number("ID of the dashboard to add the card to"),
            "name": _string("Name of the card"),
            "dataset_query": _object(DATASET_QUERY_DESCRIPTION),
            "display": _string(DISPLAY_DESCRIPTION),
            "visualization_settings": _object(VISUALIZATION_SETTINGS_DESCRIPTION),
            **GRID_PROPERTIES,
        },
        required=[
            "dashboard_id",
            "name",
            "dataset_query",
            "display",
            "visualization_settings",
        ],
    ),
)
@handle_api_errors
async def create_dashboard_only_card(
    metabase_ctx: MetabaseContext, args: CreateDashboardOnlyCardArguments
) -> types.CallToolResult:
    """
    Embed a card definition directly in a dashboard

    The dashcard has no card_id; its visualization settings carry a
    `virtual_card` object with the name, display, settings and query that a
    saved card would otherwise hold. Like add_card_to_dashboard this rewrites
    the dashboard's full dashcard list.
    """
    dashcards = await fetch_dashcards(metabase_ctx, args.dashboard_id)

    virtual_dashcard = {
        "id": new_dashcard_id(dashcards),
        "card_id": None,
        "row": args.row,
        "col": args.col,
        "size_x": args.size_x,
        "size_y": args.size_y,
        "series": [],
        "parameter_mappings": [],
        "visualization_settings": {
            **args.visualization_settings,
            "virtual_card": {
                "name": args.name,
                "display": args.display,
                "visualization_settings": args.visualization_settings,
                "dataset_query": args.dataset_query,
            },
        },
    }

    return json_result(
        await save_dashcards(metabase_ctx, args.dashboard_id, dashcards + [virtual_dashcard])
    )


# ===== Tool Dispatch =====


async def handle_call_tool(
    metabase_ctx: MetabaseContext, name: str, arguments: Optional[Dict[str, Any]]
) -> types.CallToolResult:
    """
    Run one tool call

    Unknown tool names produce an error result rather than a protocol error.
    Arguments are decoded into the tool's model before any request is made;
    invalid arguments raise McpError(INVALID_PARAMS). Metabase API failures are
    reported in the result with isError set.
    """
    definition = TOOL_REGISTRY.get(name)
    if definition is None:
        logger.warning("Unknown tool requested: %s", name)
        return text_result(f"Unknown tool: {name}", is_error=True)

    try:
        args = definition.arguments.model_validate(arguments or {})
    except ValidationError as e:
        raise protocol_error(types.INVALID_PARAMS, format_validation_error(name, e)) from e

    await ensure_session(metabase_ctx)

    logger.info("Calling tool %s", name)
    return await definition.handler(metabase_ctx, args)


# ===== Resources =====

RESOURCE_ENDPOINTS = [
    (re.compile(r"metabase://dashboard/([0-9]+)"), "/api/dashboard/{}"),
    (re.compile(r"metabase://card/([0-9]+)"), "/api/card/{}"),
    (re.compile(r"metabase://database/([0-9]+)"), "/api/database/{}"),
]

RESOURCE_TEMPLATES = [
    types.ResourceTemplate(
        uriTemplate="metabase://dashboard/{id}",
        name="Dashboard by ID",
        mimeType=JSON_MIME_TYPE,
        description="Get a Metabase dashboard by its ID",
    ),
    types.ResourceTemplate(
        uriTemplate="metabase://card/{id}",
        name="Card by ID",
        mimeType=JSON_MIME_TYPE,
        description="Get a Metabase question/card by its ID",
    ),
    types.ResourceTemplate(
        uriTemplate="metabase://database/{id}",
        name="Database by ID",
        mimeType=JSON_MIME_TYPE,
        description="Get a Metabase database by its ID",
    ),
]


def resolve_resource_uri(uri: str) -> Optional[str]:
    """Map a metabase:// resource URI to its API endpoint, or None if it matches no pattern"""
    for pattern, endpoint in RESOURCE_ENDPOINTS:
        match = pattern.fullmatch(uri)
        if match:
            return endpoint.format(match.group(1))
    return None


def list_resource_templates() -> List[types.ResourceTemplate]:
    return list(RESOURCE_TEMPLATES)


async def handle_list_resources(metabase_ctx: MetabaseContext) -> List[types.Resource]:
    """List every dashboard as a metabase://dashboard/{id} resource"""
    await ensure_session(metabase_ctx)

    try:
        dashboards = await make_api_request(metabase_ctx, "get", "/api/dashboard") or []
    except MetabaseAPIError as e:
        raise protocol_error(
            types.INTERNAL_ERROR, "Failed to list Metabase resources"
        ) from e

    logger.info("Listed %d dashboard resources", len(dashboards))
    return [
        types.Resource(
            uri=f"metabase://dashboard/{dashboard['id']}",
            mimeType=JSON_MIME_TYPE,
            name=dashboard.get("name") or "",
            description=f"Metabase dashboard: {dashboard.get('name')}",
        )
        for dashboard in dashboards
    ]


async def handle_read_resource(
    metabase_ctx: MetabaseContext, uri: str
) -> types.ReadResourceResult:
    """
    Read a dashboard, card or database resource

    Args:
        uri: metabase://dashboard/{id}, metabase://card/{id} or metabase://database/{id}

    Raises:
        McpError: INVALID_REQUEST for an unrecognized URI, INTERNAL_ERROR when
            the Metabase call fails
    """
    endpoint = resolve_resource_uri(uri)
    if endpoint is None:
        raise protocol_error(types.INVALID_REQUEST, f"Invalid URI format: {uri}")

    await ensure_session(metabase_ctx)

    try:
        data = await make_api_request(metabase_ctx, "get", endpoint)
    except MetabaseAPIError as e:
        raise protocol_error(
            types.INTERNAL_ERROR, f"Metabase API error: {e.message}"
        ) from e

    return types.ReadResourceResult(
        contents=[
            types.TextResourceContents(
                uri=uri, mimeType=JSON_MIME_TYPE, text=format_json(data)
            )
        ]
    )


# ===== Server =====


def create_server(config: MetabaseConfig) -> FastMCP:
    """
    Build the MCP server for a validated configuration

    Resource and tool requests are routed to the handlers above. Read and call
    requests are bound directly on the low-level server so that McpError
    reaches the client as a protocol error instead of being folded into a tool
    result.
    """
    server = FastMCP(SERVER_NAME, lifespan=make_lifespan(config))
    # FastMCP folds handler exceptions into tool results; the low-level server
    # is needed to return McpError to the client as a protocol error
    lowlevel = server._mcp_server

    def current_context() -> MetabaseContext:
        return lowlevel.request_context.lifespan_context

    @lowlevel.list_resources()
    async def _list_resources() -> List[types.Resource]:
        return await handle_list_resources(current_context())

    @lowlevel.list_resource_templates()
    async def _list_resource_templates() -> List[types.ResourceTemplate]:
        return list_resource_templates()

    @lowlevel.list_tools()
    async def _list_tools() -> List[types.Tool]:
        return list_tools()

    async def _on_read_resource(req: types.ReadResourceRequest) -> types.ServerResult:
        return types.ServerResult(
            await handle_read_resource(current_context(), str(req.params.uri))
        )

    async def _on_call_tool(req: types.CallToolRequest) -> types.ServerResult:
        return types.ServerResult(
            await handle_call_tool(current_context(), req.params.name, req.params.arguments)
        )

    lowlevel.request_handlers[types.ReadResourceRequest] = _on_read_resource
    lowlevel.request_handlers[types.CallToolRequest] = _on_call_tool

    return server


def log_uncaught_exception(exc_type, exc, tb) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))


def log_unhandled_async_error(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    # logged only; the event loop keeps serving
    logger.critical(
        "Unhandled asynchronous error: %s",
        context.get("message"),
        exc_info=context.get("exception"),
    )


async def serve(server: FastMCP) -> None:
    asyncio.get_running_loop().set_exception_handler(log_unhandled_async_error)
    await server.run_stdio_async()


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.excepthook = log_uncaught_exception

    try:
        config = load_config()
    except ConfigurationError as e:
        logger.critical("Invalid Metabase configuration: %s", e)
        sys.exit(1)

    server = create_server(config)

    logger.info("Starting Metabase MCP server...")
    try:
        asyncio.run(serve(server))
    except KeyboardInterrupt:
        logger.info("Shutting down server...")


if __name__ == "__main__":
    main()
