import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


logger = logging.getLogger("uvicorn.error")

ToolFn = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
GroupColor = Literal["grey", "blue", "red", "yellow", "green", "pink", "purple", "cyan", "orange"]


class ToolArgs(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TabIdsArgs(ToolArgs):
    tab_ids: List[int] = Field(description="Array of tab IDs.")

    @field_validator("tab_ids", mode="before")
    @classmethod
    def _wrap_single_id(cls, value: Any) -> Any:
        if isinstance(value, (int, str)) and not isinstance(value, bool):
            return [value]
        return value


class ListTabsArgs(ToolArgs):
    window_id: Optional[int] = Field(default=None, description="Only list tabs in this window. Omit to list tabs across all windows.")
    group_id: Optional[int] = Field(default=None, description="Only list tabs in this tab group. Omit to list all tabs.")


class SwitchTabArgs(ToolArgs):
    tab_id: int = Field(description="The ID of the tab to switch to.")


class CloseTabsArgs(TabIdsArgs):
    pass


class CloseDuplicateTabsArgs(ToolArgs):
    window_id: Optional[int] = Field(default=None, description="Window to check for duplicates. Omit for current window.")


class GroupTabsArgs(TabIdsArgs):
    title: Optional[str] = Field(default=None, description="Name for the tab group (e.g. 'Work', 'Research', 'Shopping').")
    color: Optional[GroupColor] = Field(default=None, description="Color for the tab group.")
    group_id: Optional[int] = Field(default=None, description="Add tabs to this existing group instead of creating a new one.")


class UngroupTabsArgs(TabIdsArgs):
    pass


class ListGroupsArgs(ToolArgs):
    window_id: Optional[int] = Field(default=None, description="Only list groups in this window. Omit for all windows.")


class MoveTabsArgs(TabIdsArgs):
    index: int = Field(default=-1, description="Position to move tabs to. Use -1 for the end.")
    window_id: Optional[int] = Field(default=None, description="Move tabs to this window. Omit to keep in current window.")


class CreateTabArgs(ToolArgs):
    url: Optional[str] = Field(default=None, description="URL to open. Omit for a new blank tab.")
    active: bool = Field(default=True, description="Whether to make the new tab active (default: true).")
    pinned: bool = Field(default=False, description="Whether to pin the new tab (default: false).")


class ReloadTabsArgs(TabIdsArgs):
    bypass_cache: bool = Field(default=False, description="Bypass the cache (hard reload). Default: false.")


class DiscardTabsArgs(TabIdsArgs):
    pass


class DuplicateTabArgs(ToolArgs):
    tab_id: int = Field(description="The ID of the tab to duplicate.")


class PinTabsArgs(TabIdsArgs):
    pinned: bool = Field(default=True, description="True to pin, false to unpin. Default: true.")


class MuteTabsArgs(TabIdsArgs):
    muted: bool = Field(default=True, description="True to mute, false to unmute. Default: true.")


class CollapseGroupArgs(ToolArgs):
    group_id: int = Field(description="The ID of the tab group.")
    collapsed: bool = Field(default=True, description="True to collapse, false to expand. Default: true.")


class UpdateGroupArgs(ToolArgs):
    group_id: int = Field(description="The ID of the tab group to update.")
    title: Optional[str] = Field(default=None, description="New title for the group.")
    color: Optional[GroupColor] = Field(default=None, description="New color for the group.")


class WebSearchArgs(ToolArgs):
    query: str = Field(description="The search query.")
    engine: Optional[str] = Field(
        default=None,
        description="Name of a specific search engine to use (e.g. 'Google', 'DuckDuckGo'). Omit for the default engine.",
    )


class EmptyArgs(ToolArgs):
    pass


class SearchBookmarksArgs(ToolArgs):
    query: str = Field(description="Search query to match against bookmark titles and URLs.")
    max_results: int = Field(default=20, description="Maximum number of results to return. Default: 20.")


class CreateBookmarkArgs(ToolArgs):
    title: Optional[str] = Field(default=None, description="Title for the bookmark.")
    url: Optional[str] = Field(default=None, description="URL to bookmark. Omit to bookmark the active tab.")
    folder_id: Optional[str] = Field(default=None, description="ID of the folder to create the bookmark in.")


class SearchHistoryArgs(ToolArgs):
    query: str = Field(
        default="",
        description="Search query to match against history URLs and titles. Use empty string to match all.",
    )
    max_results: int = Field(default=20, description="Maximum number of results. Default: 20.")
    hours_back: Optional[float] = Field(default=None, description="Only search history from the last N hours.")


class GenerateReportArgs(ToolArgs):
    group_id: Optional[int] = Field(default=None, description="The ID of the tab group to generate a report from.")
    group_name: Optional[str] = Field(
        default=None,
        description="The name of the tab group (fuzzy match). Use this if you don't have the groupId.",
    )
    topic: Optional[str] = Field(
        default=None,
        description="Optional focus topic for the report. If provided, the report will emphasize this angle.",
    )


class TabArgs(ToolArgs):
    tab_id: int = Field(description="The ID of the tab.")


class PageAction(ToolArgs):
    type: Literal["click", "type", "select", "submit", "press"] = Field(
        description=(
            "Action type: click (click element), type (fill text input), select (pick dropdown value), "
            "submit (submit form), press (key press like Enter)."
        )
    )
    selector: str = Field(description="CSS selector of the target element (from inspect_page).")
    text: Optional[str] = Field(default=None, description="Text to type (only for 'type' action).")
    value: Optional[str] = Field(default=None, description="Value to select (only for 'select' action).")
    key: Optional[str] = Field(default=None, description="Key to press (only for 'press' action). Default: 'Enter'.")


class InteractWithPageArgs(ToolArgs):
    tab_id: int = Field(description="The ID of the tab to interact with.")
    actions: List[PageAction] = Field(description="Array of actions to execute in order.")


class WaitForPageArgs(ToolArgs):
    tab_id: int = Field(description="The ID of the tab to wait on.")
    timeout: int = Field(default=5000, description="Max time to wait in milliseconds. Default: 5000, max: 15000.")

    @field_validator("timeout")
    @classmethod
    def _cap_timeout(cls, value: int) -> int:
        return max(0, min(value, 15000))


TOOL_SPECS: List[Tuple[str, str, Type[ToolArgs]]] = [
    (
        "list_tabs",
        "List all open tabs. Returns tab ID, title, URL, group info, and status for each tab. "
        "Use this to understand what tabs the user has open before performing actions.",
        ListTabsArgs,
    ),
    (
        "switch_tab",
        "Switch to (activate) a specific tab and focus its window. Use after finding the desired tab with list_tabs.",
        SwitchTabArgs,
    ),
    (
        "close_tabs",
        "Close one or more tabs by their IDs. Will refuse to close ALL tabs in a window (at least one must remain). "
        "For closing duplicates, prefer close_duplicate_tabs instead.",
        CloseTabsArgs,
    ),
    (
        "close_duplicate_tabs",
        "Find and close duplicate tabs (same URL) in a window, keeping the first occurrence of each URL.",
        CloseDuplicateTabsArgs,
    ),
    (
        "group_tabs",
        "Group tabs together into a named, colored tab group. Creates a new group or adds tabs to an existing group.",
        GroupTabsArgs,
    ),
    (
        "ungroup_tabs",
        "Remove tabs from their tab group(s). If a group becomes empty, it is automatically removed.",
        UngroupTabsArgs,
    ),
    ("list_groups", "List all tab groups with their title, color, and tab count.", ListGroupsArgs),
    ("move_tabs", "Move tabs to a specific position or to a different window.", MoveTabsArgs),
    ("create_tab", "Open a new tab, optionally with a specific URL.", CreateTabArgs),
    ("reload_tabs", "Reload one or more tabs.", ReloadTabsArgs),
    (
        "discard_tabs",
        "Unload tabs from memory to save resources. Tabs remain visible but will reload when activated. "
        "Cannot discard the active tab.",
        DiscardTabsArgs,
    ),
    ("duplicate_tab", "Duplicate an existing tab.", DuplicateTabArgs),
    ("pin_tabs", "Pin or unpin tabs.", PinTabsArgs),
    ("mute_tabs", "Mute or unmute tabs.", MuteTabsArgs),
    ("collapse_group", "Collapse or expand a tab group.", CollapseGroupArgs),
    ("update_group", "Update a tab group's title and/or color.", UpdateGroupArgs),
    (
        "web_search",
        "Perform a web search. Opens results in a new tab using the browser's search engine.",
        WebSearchArgs,
    ),
    ("list_search_engines", "List all installed search engines in the browser.", EmptyArgs),
    ("search_bookmarks", "Search the user's bookmarks by title or URL.", SearchBookmarksArgs),
    (
        "create_bookmark",
        "Create a bookmark. If no URL is provided, bookmarks the currently active tab.",
        CreateBookmarkArgs,
    ),
    ("search_history", "Search the user's browsing history.", SearchHistoryArgs),
    (
        "generate_report",
        "Generate a research report from all tabs in a tab group. Scrapes every tab's content and uses AI to "
        "synthesize a comprehensive markdown report, which opens in a new tab.",
        GenerateReportArgs,
    ),
    (
        "inspect_page",
        "Extract interactive elements from a tab's page: inputs, buttons, links, selects, textareas. Returns CSS "
        "selectors, labels, and current values. Use this before interact_with_page.",
        TabArgs,
    ),
    (
        "interact_with_page",
        "Execute DOM actions on a page: click buttons, type into inputs, select dropdown values, submit forms, or "
        "press keys. Actions run sequentially with small delays between them. Use inspect_page first to find the "
        "right selectors.",
        InteractWithPageArgs,
    ),
    (
        "wait_for_page",
        "Wait for a tab to finish loading after a navigation or form submission. Returns the new URL and title "
        "once loaded.",
        WaitForPageArgs,
    ),
]

# Read-only capabilities used by context assembly and guardrails; never offered to the model.
INTERNAL_TOOL_ARGS: Dict[str, Type[ToolArgs]] = {
    "get_tab": TabArgs,
    "extract_page_content": TabArgs,
}

TOOL_ARGS: Dict[str, Type[ToolArgs]] = {name: model for name, _, model in TOOL_SPECS}
TOOL_ARGS.update(INTERNAL_TOOL_ARGS)


def _clean_schema(node: Any, defs: Dict[str, Any]) -> Any:
    if isinstance(node, list):
        return [_clean_schema(item, defs) for item in node]
    if not isinstance(node, dict):
        return node
    if "$ref" in node:
        target = defs.get(node["$ref"].rsplit("/", 1)[-1], {})
        merged = {**target, **{k: v for k, v in node.items() if k != "$ref"}}
        return _clean_schema(merged, defs)
    cleaned: Dict[str, Any] = {}
    for key, value in node.items():
        if key in ("title", "$defs"):
            continue
        if key == "default" and value is None:
            continue
        if key == "anyOf":
            branches = [b for b in value if b.get("type") != "null"]
            if len(branches) == 1:
                cleaned.update(_clean_schema(branches[0], defs))
                continue
        if key == "properties":
            cleaned[key] = {name: _clean_schema(prop, defs) for name, prop in value.items()}
            continue
        cleaned[key] = _clean_schema(value, defs)
    return cleaned


def parameters_schema(model: Type[ToolArgs]) -> Dict[str, Any]:
    schema = model.model_json_schema(by_alias=True)
    cleaned = _clean_schema(schema, schema.get("$defs", {}))
    cleaned.pop("description", None)
    cleaned.setdefault("properties", {})
    cleaned.setdefault("required", [])
    return cleaned


def build_definitions() -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": name, "description": description, "parameters": parameters_schema(model)},
        }
        for name, description, model in TOOL_SPECS
    ]


def validate_args(name: str, args: Any) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Return (clean_args, None) or (None, invalid_arguments_result)."""
    model = TOOL_ARGS.get(name)
    raw = args if isinstance(args, dict) else {}
    if model is None:
        return dict(raw), None
    try:
        parsed = model.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'args'}: {err.get('msg')}" for err in exc.errors()
        )
        return None, {"error": f"Invalid arguments for {name}: {problems}", "invalid_arguments": True}
    return parsed.model_dump(by_alias=True, exclude_none=True), None


class ToolRegistry:
    """Name -> async capability map plus the model-facing tool schema."""

    def __init__(self, implementations: Mapping[str, ToolFn]):
        self.implementations: Dict[str, ToolFn] = dict(implementations)
        self._definitions = build_definitions()

    def definitions(self) -> List[Dict[str, Any]]:
        return [d for d in self._definitions if d["function"]["name"] in self.implementations]

    def has(self, name: str) -> bool:
        return name in self.implementations

    def names(self) -> List[str]:
        return list(self.implementations.keys())

    async def execute(self, name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        fn = self.implementations.get(name)
        if fn is None:
            return {"error": f"Unknown tool: {name}"}
        clean_args, invalid = validate_args(name, args or {})
        if invalid is not None:
            logger.warning("Tool %s rejected: %s", name, invalid["error"])
            return invalid
        try:
            result = await fn(clean_args or {})
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return {"error": str(exc) or exc.__class__.__name__}
        if not isinstance(result, dict):
            return {"result": result}
        return result
