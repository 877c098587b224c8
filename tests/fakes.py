import asyncio
import copy
import itertools
import json
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from tabpilot.cancellation import CancelSignal, await_with_signal
from tabpilot.tools import ToolFn


def tool_call(name: str, args: Union[Dict[str, Any], str, None] = None, call_id: Optional[str] = None) -> Dict[str, Any]:
    arguments = args if isinstance(args, str) else json.dumps(args or {})
    call: Dict[str, Any] = {"type": "function", "function": {"name": name, "arguments": arguments}}
    if call_id is not None:
        call["id"] = call_id
    return call


_auto_ids = itertools.count(1)


def assistant_tools(*calls: Dict[str, Any], content: Optional[str] = None) -> Dict[str, Any]:
    numbered = []
    for call in calls:
        call = dict(call)
        call.setdefault("id", f"call_{next(_auto_ids)}")
        numbered.append(call)
    return {"role": "assistant", "content": content, "tool_calls": numbered}


def assistant_text(text: Optional[str]) -> Dict[str, Any]:
    return {"role": "assistant", "content": text}


Scripted = Union[Dict[str, Any], Exception, Callable[[List[Dict[str, Any]]], Dict[str, Any]]]


class ScriptedChatClient:
    """Stands in for ChatClient; replays scripted assistant messages in order."""

    def __init__(self, responses: Optional[List[Scripted]] = None, default: Optional[Scripted] = None) -> None:
        self.responses: Deque[Scripted] = deque(responses or [])
        self.default = default or assistant_text("Done.")
        self.calls: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.closed = False

    def script(self, *responses: Scripted) -> None:
        self.responses.extend(responses)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        signal: Optional[CancelSignal] = None,
    ) -> Dict[str, Any]:
        self.calls.append({"messages": copy.deepcopy(messages), "tools": tools})
        self.entered.set()
        if self.gate is not None:
            await await_with_signal(self.gate.wait(), signal, interrupt=True)
        item = self.responses.popleft() if self.responses else self.default
        if callable(item) and not isinstance(item, dict):
            item = item(messages)
        if isinstance(item, Exception):
            raise item
        return copy.deepcopy(item)

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    """In-memory capability surface: one window of tabs plus groups."""

    def __init__(
        self,
        tabs: Optional[List[Dict[str, Any]]] = None,
        groups: Optional[List[Dict[str, Any]]] = None,
        window_focused: bool = True,
        create_delay: float = 0.0,
    ) -> None:
        self.tabs: List[Dict[str, Any]] = []
        for index, tab in enumerate(tabs or []):
            self.tabs.append(
                {
                    "id": tab["id"],
                    "title": tab.get("title", f"Tab {tab['id']}"),
                    "url": tab.get("url", "about:blank"),
                    "active": tab.get("active", False),
                    "pinned": tab.get("pinned", False),
                    "groupId": tab.get("groupId", -1),
                    "windowId": 1,
                    "index": index,
                    "audible": tab.get("audible", False),
                    "discarded": tab.get("discarded", False),
                }
            )
        self.groups: List[Dict[str, Any]] = list(groups or [])
        self.window_focused = window_focused
        self.create_delay = create_delay
        self.next_id = max([t["id"] for t in self.tabs] + [99]) + 1
        self.extractions: Dict[int, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.started: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, Exception] = {}
        self.redirects: Dict[str, str] = {}

    def implementations(self) -> Dict[str, ToolFn]:
        names = [
            "list_tabs",
            "get_tab",
            "switch_tab",
            "create_tab",
            "close_tabs",
            "close_duplicate_tabs",
            "list_groups",
            "group_tabs",
            "wait_for_page",
            "inspect_page",
            "extract_page_content",
            "search_history",
            "pin_tabs",
        ]
        return {name: self._bind(name) for name in names}

    def _bind(self, name: str) -> ToolFn:
        async def invoke(args: Dict[str, Any]) -> Dict[str, Any]:
            self.calls.append((name, copy.deepcopy(args)))
            self.started.setdefault(name, asyncio.Event()).set()
            gate = self.gates.get(name)
            if gate is not None:
                await gate.wait()
            if name in self.failures:
                raise self.failures[name]
            return await getattr(self, f"_{name}")(args)

        return invoke

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def _find(self, tab_id: Any) -> Optional[Dict[str, Any]]:
        for tab in self.tabs:
            if tab["id"] == tab_id:
                return tab
        return None

    async def _list_tabs(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {"count": len(self.tabs), "tabs": [dict(t) for t in self.tabs]}

    async def _get_tab(self, args: Dict[str, Any]) -> Dict[str, Any]:
        tab = self._find(args.get("tabId"))
        if tab is None:
            return {"error": f"No tab with id {args.get('tabId')}"}
        return {"tab": {**tab, "windowFocused": self.window_focused}}

    async def _switch_tab(self, args: Dict[str, Any]) -> Dict[str, Any]:
        tab = self._find(args.get("tabId"))
        if tab is None:
            return {"error": f"No tab with id {args.get('tabId')}"}
        for other in self.tabs:
            other["active"] = other is tab
        self.window_focused = True
        return {"success": True, "tab": dict(tab)}

    async def _create_tab(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        url = args.get("url") or "about:blank"
        url = self.redirects.get(url, url)
        tab = {
            "id": self.next_id,
            "title": url,
            "url": url,
            "active": bool(args.get("active", True)),
            "pinned": bool(args.get("pinned", False)),
            "groupId": -1,
            "windowId": 1,
            "index": len(self.tabs),
            "audible": False,
            "discarded": False,
        }
        self.next_id += 1
        if tab["active"]:
            for other in self.tabs:
                other["active"] = False
        self.tabs.append(tab)
        return {"success": True, "tab": dict(tab)}

    async def _close_tabs(self, args: Dict[str, Any]) -> Dict[str, Any]:
        ids = set(args.get("tabIds") or [])
        if ids and all(t["id"] in ids for t in self.tabs):
            return {
                "success": False,
                "error": f"Refusing to close all {len(self.tabs)} tabs in window 1. At least one tab must remain.",
            }
        before = len(self.tabs)
        self.tabs = [t for t in self.tabs if t["id"] not in ids]
        return {"success": True, "closedCount": before - len(self.tabs)}

    async def _close_duplicate_tabs(self, args: Dict[str, Any]) -> Dict[str, Any]:
        seen = set()
        keep = []
        for tab in self.tabs:
            if tab["url"] in seen:
                continue
            seen.add(tab["url"])
            keep.append(tab)
        closed = len(self.tabs) - len(keep)
        self.tabs = keep
        if not closed:
            return {"success": True, "closedCount": 0, "message": "No duplicate tabs found."}
        return {"success": True, "closedCount": closed}

    async def _list_groups(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {"count": len(self.groups), "groups": [dict(g) for g in self.groups]}

    async def _group_tabs(self, args: Dict[str, Any]) -> Dict[str, Any]:
        group = {
            "id": 500 + len(self.groups),
            "title": args.get("title") or "(untitled)",
            "color": args.get("color") or "grey",
            "collapsed": False,
            "windowId": 1,
        }
        self.groups.append(group)
        for tab in self.tabs:
            if tab["id"] in (args.get("tabIds") or []):
                tab["groupId"] = group["id"]
        return {"success": True, "group": group}

    async def _wait_for_page(self, args: Dict[str, Any]) -> Dict[str, Any]:
        tab = self._find(args.get("tabId")) or {}
        return {"success": True, "tabId": args.get("tabId"), "url": tab.get("url"), "title": tab.get("title"), "status": "complete"}

    async def _inspect_page(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "tabId": args.get("tabId"),
            "elements": [{"tag": "input", "selector": "input[name='q']", "label": "Search"}],
        }

    async def _extract_page_content(self, args: Dict[str, Any]) -> Dict[str, Any]:
        extraction = self.extractions.get(args.get("tabId"))
        if extraction is None:
            return {"error": "Cannot access page content"}
        return extraction

    async def _search_history(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {"count": 2, "results": [{"url": "https://a.test"}, {"url": "https://b.test"}]}

    async def _pin_tabs(self, args: Dict[str, Any]) -> Dict[str, Any]:
        for tab in self.tabs:
            if tab["id"] in (args.get("tabIds") or []):
                tab["pinned"] = args.get("pinned", True)
        return {"success": True, "count": len(args.get("tabIds") or [])}
