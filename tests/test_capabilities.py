import json

import httpx
import pytest
import respx
from httpx import Response

from tabpilot.capabilities import HttpCapabilitySurface
from tabpilot.tools import ToolRegistry


CALL_URL = "http://bridge.test/tools/call"


@pytest.mark.asyncio
async def test_call_posts_name_and_args():
    surface = HttpCapabilitySurface("http://bridge.test/")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"count": 1, "tabs": [{"id": 1}]})

            respx_mock.post(CALL_URL).mock(side_effect=handler)
            result = await surface.call("list_tabs", {"windowId": 3})
        assert captured["json"] == {"name": "list_tabs", "args": {"windowId": 3}}
        assert result == {"count": 1, "tabs": [{"id": 1}]}
    finally:
        await surface.close()


@pytest.mark.asyncio
async def test_http_error_is_returned_as_data():
    surface = HttpCapabilitySurface("http://bridge.test")
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(CALL_URL).mock(return_value=Response(503, json={"detail": "extension asleep"}))
            result = await surface.call("switch_tab", {"tabId": 1})
        assert result["status_code"] == 503
        assert result["detail"] == {"detail": "extension asleep"}
        assert "HTTP 503" in result["error"]
    finally:
        await surface.close()


@pytest.mark.asyncio
async def test_unreachable_bridge_and_bad_bodies():
    surface = HttpCapabilitySurface("http://bridge.test")
    try:
        with respx.mock() as respx_mock:
            route = respx_mock.post(CALL_URL)
            route.mock(side_effect=httpx.ConnectError("refused"))
            unreachable = await surface.call("list_tabs", {})
            route.mock(return_value=Response(200, text="<html>"))
            garbled = await surface.call("list_tabs", {})
            route.mock(return_value=Response(200, json=[1, 2]))
            listed = await surface.call("list_tabs", {})
        assert unreachable["error"].startswith("Capability bridge unreachable")
        assert garbled == {"error": "Capability bridge returned a non-JSON body"}
        assert listed == {"result": [1, 2]}
    finally:
        await surface.close()


@pytest.mark.asyncio
async def test_surface_plugs_into_registry():
    surface = HttpCapabilitySurface("http://bridge.test")
    try:
        registry = ToolRegistry(surface.implementations())
        assert registry.has("get_tab")
        assert registry.has("extract_page_content")
        assert len(registry.definitions()) == 25
        with respx.mock() as respx_mock:
            respx_mock.post(CALL_URL).mock(return_value=Response(200, json={"success": True}))
            result = await registry.execute("pin_tabs", {"tabIds": 4})
        assert result == {"success": True}
    finally:
        await surface.close()
