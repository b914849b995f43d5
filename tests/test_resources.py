import json

import httpx
import mcp.types as types
import pytest
from mcp.shared.exceptions import McpError

from metabase_mcp import (
    handle_list_resources,
    handle_read_resource,
    list_resource_templates,
    resolve_resource_uri,
)

pytestmark = pytest.mark.anyio


async def test_list_resources_maps_dashboards_in_order(metabase_ctx, fake_metabase) -> None:
    fake_metabase.add_json(
        "GET",
        "/api/dashboard",
        [{"id": 7, "name": "Revenue"}, {"id": 3, "name": "Churn"}],
    )

    resources = await handle_list_resources(metabase_ctx)

    assert [str(resource.uri) for resource in resources] == [
        "metabase://dashboard/7",
        "metabase://dashboard/3",
    ]
    assert resources[0].name == "Revenue"
    assert resources[0].mimeType == "application/json"
    assert resources[0].description == "Metabase dashboard: Revenue"


async def test_list_resources_failure_is_internal_error(metabase_ctx, fake_metabase) -> None:
    fake_metabase.add_json("GET", "/api/dashboard", {"message": "boom"}, status=500)

    with pytest.raises(McpError) as excinfo:
        await handle_list_resources(metabase_ctx)

    assert excinfo.value.error.code == types.INTERNAL_ERROR
    assert excinfo.value.error.message == "Failed to list Metabase resources"


async def test_list_resources_logs_in_first(password_ctx, fake_metabase) -> None:
    fake_metabase.add_json("POST", "/api/session", {"id": "session-1"})
    fake_metabase.add_json("GET", "/api/dashboard", [])

    assert await handle_list_resources(password_ctx) == []

    assert [request.url.path for request in fake_metabase.requests] == [
        "/api/session",
        "/api/dashboard",
    ]
    assert fake_metabase.requests[1].headers["X-Metabase-Session"] == "session-1"


def test_resource_templates_are_static() -> None:
    templates = list_resource_templates()

    assert [template.uriTemplate for template in templates] == [
        "metabase://dashboard/{id}",
        "metabase://card/{id}",
        "metabase://database/{id}",
    ]
    assert all(template.mimeType == "application/json" for template in templates)


@pytest.mark.parametrize(
    "uri, endpoint",
    [
        ("metabase://dashboard/42", "/api/dashboard/42"),
        ("metabase://card/9", "/api/card/9"),
        ("metabase://database/1", "/api/database/1"),
        ("metabase://widget/5", None),
        ("metabase://dashboard/abc", None),
        ("metabase://dashboard/42/extra", None),
        ("other://dashboard/42", None),
    ],
)
def test_resolve_resource_uri(uri, endpoint) -> None:
    assert resolve_resource_uri(uri) == endpoint


async def test_read_dashboard_resource(metabase_ctx, fake_metabase) -> None:
    dashboard = {"id": 42, "name": "Revenue", "dashcards": []}
    fake_metabase.add_json("GET", "/api/dashboard/42", dashboard)

    result = await handle_read_resource(metabase_ctx, "metabase://dashboard/42")

    assert len(fake_metabase.requests) == 1
    assert fake_metabase.requests[0].method == "GET"
    assert fake_metabase.requests[0].url.path == "/api/dashboard/42"

    (content,) = result.contents
    assert str(content.uri) == "metabase://dashboard/42"
    assert content.mimeType == "application/json"
    assert content.text == json.dumps(dashboard, indent=2)


async def test_read_invalid_uri_makes_no_request(metabase_ctx, fake_metabase) -> None:
    with pytest.raises(McpError) as excinfo:
        await handle_read_resource(metabase_ctx, "metabase://widget/5")

    assert excinfo.value.error.code == types.INVALID_REQUEST
    assert "metabase://widget/5" in excinfo.value.error.message
    assert fake_metabase.requests == []


async def test_read_resource_api_error(metabase_ctx, fake_metabase) -> None:
    fake_metabase.add("GET", "/api/card/9", httpx.Response(404, text="Not found."))

    with pytest.raises(McpError) as excinfo:
        await handle_read_resource(metabase_ctx, "metabase://card/9")

    assert excinfo.value.error.code == types.INTERNAL_ERROR
    assert excinfo.value.error.message == (
        "Metabase API error: Request failed with status code 404"
    )
