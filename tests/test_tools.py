import pytest

from tabpilot.tools import TOOL_SPECS, ToolRegistry, build_definitions, parameters_schema, validate_args
from tabpilot.tools import GroupTabsArgs, InteractWithPageArgs, ListTabsArgs


def test_definitions_cover_every_tool_in_openai_shape():
    definitions = build_definitions()
    names = [d["function"]["name"] for d in definitions]
    assert len(names) == len(TOOL_SPECS) == 25
    assert "get_tab" not in names
    assert "extract_page_content" not in names
    for definition in definitions:
        assert definition["type"] == "function"
        params = definition["function"]["parameters"]
        assert params["type"] == "object"
        assert "properties" in params and "required" in params


def test_schema_uses_camel_case_and_drops_noise():
    schema = parameters_schema(GroupTabsArgs)
    assert set(schema["properties"]) == {"tabIds", "title", "color", "groupId"}
    assert schema["required"] == ["tabIds"]
    assert schema["properties"]["tabIds"] == {"type": "array", "items": {"type": "integer"}, "description": "Array of tab IDs."}
    color = schema["properties"]["color"]
    assert color["type"] == "string"
    assert "purple" in color["enum"]
    assert "anyOf" not in color
    assert "default" not in color
    assert "title" not in schema


def test_nested_models_are_inlined():
    schema = parameters_schema(InteractWithPageArgs)
    assert "$defs" not in schema
    item = schema["properties"]["actions"]["items"]
    assert "$ref" not in item
    assert item["properties"]["type"]["enum"] == ["click", "type", "select", "submit", "press"]
    assert set(item["required"]) == {"type", "selector"}


def test_empty_argument_model_still_has_properties():
    schema = parameters_schema(ListTabsArgs)
    assert schema["required"] == []
    assert set(schema["properties"]) == {"windowId", "groupId"}


def test_validate_args_coerces_single_tab_id():
    clean, invalid = validate_args("close_tabs", {"tabIds": 7})
    assert invalid is None
    assert clean == {"tabIds": [7]}


def test_validate_args_fills_defaults_and_drops_unknown_keys():
    clean, invalid = validate_args("create_tab", {"url": "https://a.test", "bogus": 1})
    assert invalid is None
    assert clean == {"url": "https://a.test", "active": True, "pinned": False}


def test_validate_args_caps_wait_timeout():
    clean, _ = validate_args("wait_for_page", {"tabId": 3, "timeout": 60000})
    assert clean == {"tabId": 3, "timeout": 15000}


def test_validate_args_reports_invalid_arguments():
    clean, invalid = validate_args("switch_tab", {"tabId": "not-a-number"})
    assert clean is None
    assert invalid["invalid_arguments"] is True
    assert invalid["error"].startswith("Invalid arguments for switch_tab:")
    assert "tabId" in invalid["error"]


@pytest.mark.asyncio
async def test_registry_unknown_tool():
    registry = ToolRegistry({})
    assert await registry.execute("fly_to_moon", {}) == {"error": "Unknown tool: fly_to_moon"}


@pytest.mark.asyncio
async def test_registry_turns_exceptions_into_error_results():
    async def broken(args):
        raise RuntimeError("tab vanished")

    registry = ToolRegistry({"switch_tab": broken})
    assert await registry.execute("switch_tab", {"tabId": 1}) == {"error": "tab vanished"}


@pytest.mark.asyncio
async def test_registry_passes_validated_args_and_wraps_non_dict_results():
    seen = []

    async def pin(args):
        seen.append(args)
        return 3

    registry = ToolRegistry({"pin_tabs": pin})
    result = await registry.execute("pin_tabs", {"tab_ids": [1, 2]})
    assert result == {"result": 3}
    assert seen == [{"tabIds": [1, 2], "pinned": True}]


@pytest.mark.asyncio
async def test_registry_rejects_invalid_args_without_calling_tool():
    called = []

    async def switch(args):
        called.append(args)
        return {"success": True}

    registry = ToolRegistry({"switch_tab": switch})
    result = await registry.execute("switch_tab", {})
    assert result["invalid_arguments"] is True
    assert called == []


def test_registry_definitions_only_list_implemented_tools():
    async def noop(args):
        return {}

    registry = ToolRegistry({"list_tabs": noop, "get_tab": noop})
    assert [d["function"]["name"] for d in registry.definitions()] == ["list_tabs"]
    assert registry.has("get_tab")
