import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .tools import ToolRegistry
from .url_policy import is_blocked_url, normalize_url_for_dedup


logger = logging.getLogger("uvicorn.error")

DESTRUCTIVE_TOOLS = frozenset({"close_tabs", "close_duplicate_tabs"})

PAGE_AUTOMATION_TOOLS = frozenset({"inspect_page", "interact_with_page", "wait_for_page"})

TOOL_PERMISSION_TIERS = {
    "list_tabs": "read",
    "list_groups": "read",
    "list_search_engines": "read",
    "search_bookmarks": "read",
    "search_history": "read",
    "group_tabs": "organize",
    "ungroup_tabs": "organize",
    "move_tabs": "organize",
    "pin_tabs": "organize",
    "mute_tabs": "organize",
    "collapse_group": "organize",
    "update_group": "organize",
    "reload_tabs": "organize",
    "discard_tabs": "organize",
    "duplicate_tab": "organize",
    "switch_tab": "organize",
    "create_tab": "navigate",
    "web_search": "navigate",
    "create_bookmark": "navigate",
    "close_tabs": "close",
    "close_duplicate_tabs": "close",
    "inspect_page": "interact",
    "interact_with_page": "interact",
    "wait_for_page": "interact",
    "generate_report": "report",
}

BLOCKED_SITE_ERROR = "Blocked by privacy settings for this site."
DENIED_ERROR = "User denied this action."
ALREADY_FOCUSED_MESSAGE = "switch_tab skipped: tab already active and focused."


def is_destructive(name: str) -> bool:
    return name in DESTRUCTIVE_TOOLS


def permission_tiers(tool_names: Iterable[str]) -> List[str]:
    tiers: List[str] = []
    for name in tool_names:
        tier = TOOL_PERMISSION_TIERS.get(name)
        if tier and tier not in tiers:
            tiers.append(tier)
    return tiers


def denied_result() -> Dict[str, Any]:
    return {"error": DENIED_ERROR, "denied": True}


def blocked_result(url: str, tab_id: Optional[int] = None) -> Dict[str, Any]:
    result: Dict[str, Any] = {"error": BLOCKED_SITE_ERROR, "blocked": True, "url": url}
    if tab_id is not None:
        result["tabId"] = tab_id
    return result


def _tab_id(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


class DedupIndex:
    """Opened-tab and in-flight maps for one command's execution.

    A fresh index is built per command and dropped with it.
    """

    def __init__(self) -> None:
        self.opened: Dict[str, Dict[str, Any]] = {}
        self.creating: Dict[str, "asyncio.Task[Dict[str, Any]]"] = {}
        self.switching: Dict[int, "asyncio.Task[Dict[str, Any]]"] = {}

    def seed(self, tabs: Sequence[Dict[str, Any]]) -> None:
        for tab in tabs or []:
            key = normalize_url_for_dedup((tab or {}).get("url"))
            if key and key not in self.opened:
                self.opened[key] = tab

    def remember(self, keys: Iterable[Optional[str]], tab: Dict[str, Any]) -> None:
        for key in keys:
            if key:
                self.opened[key] = tab


class Guardrails:
    """Per-call policy checks wrapped around the tool registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        blocked_patterns: Sequence[str] = (),
        index: Optional[DedupIndex] = None,
    ):
        self.registry = registry
        self.blocked_patterns = list(blocked_patterns)
        self.index = index or DedupIndex()

    async def _lookup_tab(self, tab_id: int) -> Optional[Dict[str, Any]]:
        result = await self.registry.execute("get_tab", {"tabId": tab_id})
        if not isinstance(result, dict) or result.get("error"):
            return None
        return result.get("tab") if isinstance(result.get("tab"), dict) else result

    async def is_tab_focused(self, tab_id: int) -> bool:
        if not self.registry.has("get_tab"):
            return False
        tab = await self._lookup_tab(tab_id)
        if tab is None:
            return False
        return bool(tab.get("active")) and bool(tab.get("windowFocused"))

    async def _focus(self, tab_id: int) -> Dict[str, Any]:
        if await self.is_tab_focused(tab_id):
            return {
                "success": True,
                "skipped": True,
                "alreadyFocused": True,
                "tabId": tab_id,
                "message": ALREADY_FOCUSED_MESSAGE,
            }
        return await self.registry.execute("switch_tab", {"tabId": tab_id})

    async def dispatch(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        args = args or {}
        if name == "create_tab":
            url = args.get("url")
            if isinstance(url, str) and url and is_blocked_url(url, self.blocked_patterns):
                logger.info("create_tab refused by blocklist: %s", url)
                return blocked_result(url)
            return await self._create_tab(args)
        if name in PAGE_AUTOMATION_TOOLS:
            return await self._page_automation(name, args)
        if name == "switch_tab":
            tab_id = _tab_id(args.get("tabId"))
            if tab_id is not None:
                return await self._switch_tab(tab_id, args)
        return await self.registry.execute(name, args)

    async def _page_automation(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        raw = args.get("tabId")
        tab_id = int(raw) if isinstance(raw, str) and raw.strip().isdigit() else _tab_id(raw)
        if tab_id is None or not self.blocked_patterns or not self.registry.has("get_tab"):
            return await self.registry.execute(name, args)
        tab = await self._lookup_tab(tab_id)
        url = tab.get("url") if tab else None
        if isinstance(url, str) and url and is_blocked_url(url, self.blocked_patterns):
            logger.info("%s refused by blocklist: tab %s at %s", name, tab_id, url)
            return blocked_result(url, tab_id)
        result = await self.registry.execute(name, args)
        landed = result.get("url") if isinstance(result, dict) and name == "wait_for_page" else None
        if isinstance(landed, str) and landed and is_blocked_url(landed, self.blocked_patterns):
            logger.info("wait_for_page on tab %s landed on blocked %s", tab_id, landed)
            return blocked_result(landed, tab_id)
        return result

    async def _switch_tab(self, tab_id: int, args: Dict[str, Any]) -> Dict[str, Any]:
        if await self.is_tab_focused(tab_id):
            logger.info("switch_tab %s skipped: already focused", tab_id)
            return {
                "success": True,
                "skipped": True,
                "alreadyFocused": True,
                "tabId": tab_id,
                "message": ALREADY_FOCUSED_MESSAGE,
            }
        in_flight = self.index.switching.get(tab_id)
        if in_flight is not None:
            first = await asyncio.shield(in_flight)
            logger.info("switch_tab %s deduped against in-flight switch", tab_id)
            return {
                "success": True,
                "deduped": True,
                "tabId": tab_id,
                "switch": first,
                "message": "Duplicate switch_tab suppressed; reused in-flight switch.",
            }
        task = asyncio.ensure_future(self.registry.execute("switch_tab", args))
        self.index.switching[tab_id] = task
        try:
            return await task
        finally:
            self.index.switching.pop(tab_id, None)

    async def _create_tab(self, args: Dict[str, Any]) -> Dict[str, Any]:
        key = normalize_url_for_dedup(args.get("url"))
        if not key:
            return await self.registry.execute("create_tab", args)

        existing = self.index.opened.get(key)
        if existing is not None and _tab_id(existing.get("id")) is not None:
            switch = await self._focus(existing["id"])
            logger.info("create_tab %s deduped: tab %s already open", key, existing["id"])
            return {
                "success": True,
                "deduped": True,
                "tab": existing,
                "switch": switch,
                "message": "Duplicate create_tab suppressed; switched to existing tab.",
            }

        in_flight = self.index.creating.get(key)
        if in_flight is not None:
            first = await asyncio.shield(in_flight)
            first_tab = first.get("tab") if isinstance(first, dict) else None
            if isinstance(first_tab, dict) and _tab_id(first_tab.get("id")) is not None:
                switch = await self._focus(first_tab["id"])
                logger.info("create_tab %s deduped against in-flight create", key)
                return {
                    "success": True,
                    "deduped": True,
                    "tab": first_tab,
                    "switch": switch,
                    "message": "Duplicate create_tab suppressed; reused in-flight tab.",
                }

        task = asyncio.ensure_future(self.registry.execute("create_tab", args))
        self.index.creating[key] = task
        try:
            result = await task
        finally:
            if self.index.creating.get(key) is task:
                self.index.creating.pop(key, None)
        tab = result.get("tab") if isinstance(result, dict) else None
        if isinstance(tab, dict) and not result.get("error"):
            self.index.remember((key, normalize_url_for_dedup(tab.get("url"))), tab)
        return result
