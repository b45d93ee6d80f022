#!/usr/bin/env python3
"""SaaS Runtime MCP Server - Manage SaaS offerings, unit kinds, units, tenants, releases, and rollouts."""

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any

import google.auth
import google.auth.exceptions
import google.auth.transport.requests
import httpx
from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

load_dotenv()

# Credentials come from Application Default Credentials
# (GOOGLE_APPLICATION_CREDENTIALS or a local gcloud login)
DEFAULT_BASE_URL = "https://saasservicemgmt.googleapis.com/v1beta1"


def read_base_url() -> str:
    return os.getenv("SAAS_RUNTIME_BASE_URL", DEFAULT_BASE_URL).rstrip("/")


BASE_URL = read_base_url()
REQUEST_TIMEOUT = float(os.getenv("SAAS_RUNTIME_TIMEOUT", "30"))
SAAS_RUNTIME_ALLOW_WRITES = os.getenv("SAAS_RUNTIME_ALLOW_WRITES", "true").lower() == "true"
LOG_LEVEL = os.getenv("SAAS_RUNTIME_LOG_LEVEL", "INFO")
SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

logger = logging.getLogger("saas-runtime-mcp")


# ============================================================================
# ERRORS
# ============================================================================

class SaaSRuntimeError(Exception):
    """Base class for every failure reported back to the tool caller."""


class ValidationError(SaaSRuntimeError):
    """A required argument is missing or malformed. Raised before any network call."""


class AuthError(SaaSRuntimeError):
    """Google credentials could not be obtained or refreshed."""


class UnknownToolError(SaaSRuntimeError):
    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ApiError(SaaSRuntimeError):
    """The SaaS Runtime API answered with a failure, an unreadable body, or not at all.

    status_code is None when the request never produced a response
    (connection errors, timeouts).
    """

    def __init__(self, status_code: int | None, body: str):
        self.status_code = status_code
        self.body = body
        if status_code is None:
            message = f"API request failed: {body}"
        else:
            message = f"API request failed: {status_code} {body}"
        super().__init__(message)


# ============================================================================
# RESOURCE KINDS
# ============================================================================

@dataclass(frozen=True)
class ResourceKind:
    """One of the six resource types managed through the SaaS Runtime API."""

    tool_name: str  # snake_case stem used in tool names
    collection: str  # path segment under the parent
    payload_key: str  # argument holding the resource body
    label: str
    plural_label: str
    fields: dict[str, dict[str, Any]] = field(compare=False)
    required_fields: tuple[str, ...] = ("displayName",)

    def tool_for(self, verb: str) -> str:
        if verb == "list":
            return f"list_{self.tool_name}s"
        return f"{verb}_{self.tool_name}"


_COMMON_FIELDS = {
    "displayName": {"type": "string"},
    "description": {"type": "string"},
    "labels": {"type": "object", "additionalProperties": {"type": "string"}},
}

SAAS_OFFERING = ResourceKind(
    tool_name="saas_offering",
    collection="saas",
    payload_key="saasOffering",
    label="SaaS offering",
    plural_label="SaaS offerings",
    fields={
        **_COMMON_FIELDS,
        "regions": {"type": "array", "items": {"type": "string"}},
    },
)
UNIT_KIND = ResourceKind(
    tool_name="unit_kind",
    collection="unitKinds",
    payload_key="unitKind",
    label="unit kind",
    plural_label="unit kinds",
    fields={
        **_COMMON_FIELDS,
        "saasOffering": {"type": "string", "description": "Resource name of the owning SaaS offering"},
        "blueprint": {"type": "object", "description": "Artifact Registry blueprint (repository, artifact, tag)"},
    },
    required_fields=("displayName", "saasOffering"),
)
UNIT = ResourceKind(
    tool_name="unit",
    collection="units",
    payload_key="unit",
    label="unit",
    plural_label="units",
    fields={
        **_COMMON_FIELDS,
        "unitKind": {"type": "string", "description": "Resource name of the unit kind"},
        "tenant": {"type": "string", "description": "Resource name of the tenant"},
        "inputVariables": {"type": "object"},
    },
    required_fields=("displayName", "unitKind"),
)
TENANT = ResourceKind(
    tool_name="tenant",
    collection="tenants",
    payload_key="tenant",
    label="tenant",
    plural_label="tenants",
    fields=dict(_COMMON_FIELDS),
)
RELEASE = ResourceKind(
    tool_name="release",
    collection="releases",
    payload_key="release",
    label="release",
    plural_label="releases",
    fields={
        **_COMMON_FIELDS,
        "unitKinds": {"type": "array", "items": {"type": "string"}},
    },
)
ROLLOUT = ResourceKind(
    tool_name="rollout",
    collection="rollouts",
    payload_key="rollout",
    label="rollout",
    plural_label="rollouts",
    fields={
        **_COMMON_FIELDS,
        "release": {"type": "string", "description": "Resource name of the release to roll out"},
        "rolloutKind": {"type": "string"},
    },
    required_fields=("displayName", "release"),
)

RESOURCE_KINDS = (SAAS_OFFERING, UNIT_KIND, UNIT, TENANT, RELEASE, ROLLOUT)
VERBS = ("create", "get", "list", "update", "delete")


# ============================================================================
# ROUTING
# ============================================================================

@dataclass(frozen=True)
class Route:
    """HTTP method and path template for one (verb, kind) pair.

    The template has a single placeholder, either ``{parent}`` (collection
    routes) or ``{name}`` (instance routes). query_params lists the optional
    arguments forwarded as query parameters, in the order they are appended.
    """

    method: str
    template: str
    path_arg: str
    body_key: str | None = None
    query_params: tuple[str, ...] = ()

    @property
    def required_args(self) -> tuple[str, ...]:
        if self.body_key:
            return (self.path_arg, self.body_key)
        return (self.path_arg,)


def _route_for(verb: str, kind: ResourceKind) -> Route:
    if verb == "create":
        return Route("POST", f"{{parent}}/{kind.collection}", "parent", body_key=kind.payload_key)
    if verb == "get":
        return Route("GET", "{name}", "name")
    if verb == "list":
        return Route("GET", f"{{parent}}/{kind.collection}", "parent", query_params=("pageSize", "pageToken"))
    if verb == "update":
        return Route("PATCH", "{name}", "name", body_key=kind.payload_key, query_params=("updateMask",))
    if verb == "delete":
        return Route("DELETE", "{name}", "name")
    raise ValueError(f"Unsupported verb: {verb}")


ROUTES: dict[tuple[str, ResourceKind], Route] = {
    (verb, kind): _route_for(verb, kind) for kind in RESOURCE_KINDS for verb in VERBS
}


def route(verb: str, kind: ResourceKind) -> Route:
    """Look up the HTTP method and path template for a verb applied to a resource kind."""
    try:
        return ROUTES[(verb, kind)]
    except KeyError:
        raise ValueError(f"No route for {verb} on {kind.label}") from None


# ============================================================================
# REQUEST BUILDING
# ============================================================================

@dataclass(frozen=True)
class ApiRequest:
    method: str
    url: str
    body: dict[str, Any] | None = None


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def _query_value(key: str, value: Any) -> str:
    if key != "pageSize":
        return str(value)
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"'pageSize' must be an integer, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"'pageSize' must be an integer, got {value!r}")
        value = int(value)
    return str(value)


def build_request(verb: str, kind: ResourceKind, arguments: dict[str, Any]) -> ApiRequest:
    """Translate tool arguments into the HTTP request for the SaaS Runtime API.

    Resource names are trusted as given: they are not parsed, validated, or
    escaped, so a malformed name surfaces as an API error rather than a local one.

    Raises:
        ValidationError: If a required argument is absent or has the wrong type.
    """
    api_route = route(verb, kind)

    missing = [key for key in api_route.required_args if _is_missing(arguments.get(key))]
    if missing:
        raise ValidationError(
            f"Missing required argument(s) for {kind.tool_for(verb)}: {', '.join(missing)}"
        )

    resource_name = arguments[api_route.path_arg]
    if not isinstance(resource_name, str):
        raise ValidationError(f"'{api_route.path_arg}' must be a string resource name")

    body = None
    if api_route.body_key:
        body = arguments[api_route.body_key]
        if not isinstance(body, dict):
            raise ValidationError(f"'{api_route.body_key}' must be an object")

    path = api_route.template.format(**{api_route.path_arg: resource_name})
    url = f"{BASE_URL}/{path}"

    # Falsy values (pageSize=0, empty strings) are treated as not provided
    params = [
        (key, _query_value(key, arguments[key]))
        for key in api_route.query_params
        if arguments.get(key)
    ]
    if params:
        url = str(httpx.URL(url, params=params))

    return ApiRequest(method=api_route.method, url=url, body=body)


# ============================================================================
# CREDENTIALS
# ============================================================================

class GoogleCredentialProvider:
    """Bearer tokens from Application Default Credentials.

    Credentials are resolved on first use and cached; the access token is only
    refreshed once it is missing or expired.
    """

    def __init__(self, scopes: list[str] | None = None):
        self.scopes = scopes or SCOPES
        self._credentials = None
        self._lock = asyncio.Lock()

    async def get_access_token(self) -> str:
        async with self._lock:
            return await asyncio.to_thread(self._refresh_if_needed)

    def _refresh_if_needed(self) -> str:
        try:
            if self._credentials is None:
                self._credentials, _ = google.auth.default(scopes=self.scopes)
            if not self._credentials.valid:
                self._credentials.refresh(google.auth.transport.requests.Request())
        except google.auth.exceptions.GoogleAuthError as e:
            raise AuthError(f"Failed to obtain Google credentials: {e}") from e
        return self._credentials.token


credential_provider = GoogleCredentialProvider()


async def get_auth_header() -> dict[str, str]:
    """Create Bearer Auth header for the SaaS Runtime API."""
    token = await credential_provider.get_access_token()
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


def check_write_permission(method: str) -> None:
    """Raise error if writes not allowed for non-GET methods."""
    if method != "GET" and not SAAS_RUNTIME_ALLOW_WRITES:
        raise ValidationError(
            f"Write operations ({method}) are disabled. "
            "Set SAAS_RUNTIME_ALLOW_WRITES=true to enable POST, PATCH, and DELETE requests."
        )


# ============================================================================
# TRANSPORT AND RESPONSES
# ============================================================================

def normalize_response(response: httpx.Response) -> Any:
    """Turn an HTTP response into a decoded result.

    Raises:
        ApiError: On a non-2xx status or a body that is not valid JSON.
    """
    if not response.is_success:
        raise ApiError(response.status_code, response.text)

    if response.status_code == 204:
        return {}

    try:
        return response.json()
    except ValueError as e:
        raise ApiError(
            response.status_code, f"Malformed JSON in response body: {response.text!r}"
        ) from e


async def saas_runtime_request(request: ApiRequest) -> Any:
    """Make a request to the SaaS Runtime API."""
    check_write_permission(request.method)
    headers = await get_auth_header()

    try:
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=request.method,
                url=request.url,
                headers=headers,
                json=request.body,
                timeout=REQUEST_TIMEOUT,
            )
    except httpx.TimeoutException as e:
        raise ApiError(None, f"Request timed out after {REQUEST_TIMEOUT:g}s") from e
    except httpx.HTTPError as e:
        raise ApiError(None, f"{type(e).__name__}: {e}") from e

    return normalize_response(response)


# ============================================================================
# TOOL CATALOG
# ============================================================================

WRITE_WARNING = "⚠️ WRITE OPERATION - Confirm with user before calling."

_DESCRIPTIONS = {
    "create": "Create a new {label}.",
    "get": "Get a {label}.",
    "list": "List {plural_label}.",
    "update": "Update a {label}.",
    "delete": "Delete a {label}.",
}


def _build_catalog() -> dict[str, dict[str, Any]]:
    tools = {}
    for kind in RESOURCE_KINDS:
        for verb in VERBS:
            method = route(verb, kind).method
            description = _DESCRIPTIONS[verb].format(label=kind.label, plural_label=kind.plural_label)
            if method != "GET":
                description = f"{WRITE_WARNING} {description}"
            tools[kind.tool_for(verb)] = {
                "verb": verb,
                "kind": kind,
                "method": method,
                "description": description,
            }
    return tools


# Tool definitions: one per (verb, resource kind)
# Each tool has: verb, kind, method, description
TOOLS = _build_catalog()

PARAM_DEFINITIONS = {
    "parent": {
        "type": "string",
        "description": "Parent project and location (projects/{project}/locations/{location})",
    },
    "pageSize": {"type": "integer", "description": "Maximum number of results to return"},
    "pageToken": {"type": "string", "description": "Page token returned by a previous list call"},
    "updateMask": {
        "type": "string",
        "description": "Comma-separated field paths to update (e.g. 'displayName,labels'). Omit to update all provided fields.",
    },
}


def _payload_schema(kind: ResourceKind, verb: str) -> dict[str, Any]:
    schema = {"type": "object", "properties": dict(kind.fields)}
    if verb == "create":
        schema["required"] = list(kind.required_fields)
    return schema


def build_tool_schema(tool_name: str, tool_config: dict) -> Tool:
    """Build a Tool object whose input schema mirrors the tool's route."""
    verb, kind = tool_config["verb"], tool_config["kind"]
    api_route = route(verb, kind)

    properties = {}
    if api_route.path_arg == "name":
        properties["name"] = {
            "type": "string",
            "description": f"Full resource name (projects/{{project}}/locations/{{location}}/{kind.collection}/{{id}})",
        }
    else:
        properties["parent"] = PARAM_DEFINITIONS["parent"].copy()
    if api_route.body_key:
        properties[api_route.body_key] = _payload_schema(kind, verb)
    for param in api_route.query_params:
        properties[param] = PARAM_DEFINITIONS[param].copy()

    return Tool(
        name=tool_name,
        description=tool_config["description"],
        inputSchema={
            "type": "object",
            "properties": properties,
            "required": list(api_route.required_args),
        },
    )


def resolve_tool(name: str) -> tuple[str, ResourceKind]:
    if name not in TOOLS:
        raise UnknownToolError(name)
    tool_config = TOOLS[name]
    return tool_config["verb"], tool_config["kind"]


# ============================================================================
# DISPATCH
# ============================================================================

def _format_result(result: Any) -> str:
    return json.dumps(result, indent=2)


def _error_result(message: str) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=f"Error: {message}")],
        isError=True,
    )


async def dispatch(name: str, arguments: dict[str, Any] | None) -> CallToolResult:
    """Run a tool call end to end and wrap the outcome for the caller.

    Never raises: every failure, expected or not, comes back as an error result.
    Nothing is retried.
    """
    try:
        verb, kind = resolve_tool(name)
        if arguments is None:
            raise ValidationError("No arguments provided")
        if not isinstance(arguments, dict):
            raise ValidationError(f"Arguments must be an object, got {type(arguments).__name__}")
        request = build_request(verb, kind, arguments)
        logger.debug("%s: %s %s", name, request.method, request.url)
        result = await saas_runtime_request(request)
    except SaaSRuntimeError as e:
        logger.warning("Tool %s failed: %s", name, e)
        return _error_result(str(e))
    except Exception as e:
        logger.exception("Unexpected error in tool %s", name)
        return _error_result(str(e))

    return CallToolResult(
        content=[TextContent(type="text", text=_format_result(result))],
        isError=False,
    )


# Create the MCP server
server = Server("gcp-saas-runtime")


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available SaaS Runtime tools."""
    return [build_tool_schema(name, config) for name, config in TOOLS.items()]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any] | None) -> CallToolResult:
    """Handle tool calls for every SaaS Runtime resource kind."""
    return await dispatch(name, arguments)


async def main():
    """Run the MCP server."""
    # stdout carries the MCP stream
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("SaaS Runtime MCP server running on stdio (%s)", BASE_URL)
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
