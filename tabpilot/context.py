"""Browser-state context block for the first user message of a command."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from .cancellation import run_with_timeout
from .tools import ToolRegistry
from .url_policy import is_blocked_url


logger = logging.getLogger("uvicorn.error")

CONTEXT_PLACEHOLDER = "Could not retrieve current browser state."
BLOCKED_CONTENT_NOTE = "content access blocked by user policy"


def item_budget(item_count: int, global_budget: int, max_chars_per_item: int) -> int:
    return min(global_budget // max(item_count, 1), max_chars_per_item)


def format_extraction(extraction: Optional[Dict[str, Any]], budget: int) -> str:
    """Render one page's extracted signals, structured fields first, trimmed to ``budget``."""
    if not extraction or budget <= 3:
        return ""
    meta = extraction.get("meta") or {}
    parts: List[str] = []
    for label, key in (
        ("desc", "description"),
        ("site", "ogSiteName"),
        ("type", "ogType"),
        ("section", "section"),
        ("author", "author"),
        ("keywords", "keywords"),
    ):
        value = meta.get(key)
        if value:
            parts.append(f"{label}: {value}")
    if extraction.get("breadcrumbs"):
        parts.append(f"path: {extraction['breadcrumbs']}")
    json_ld = extraction.get("jsonLd") or []
    if json_ld:
        described = []
        for item in json_ld:
            text = str(item.get("type") or "")
            if item.get("name"):
                text += f": {item['name']}"
            described.append(text)
        parts.append(f"structured: {'; '.join(described)}")
    headings = extraction.get("headings") or {}
    if headings.get("h1"):
        parts.append(f"h1: {' | '.join(headings['h1'])}")
    if headings.get("h2"):
        parts.append(f"h2: {' | '.join(headings['h2'])}")

    text = "\n    ".join(parts)
    body = extraction.get("bodyText")
    if body and len(text) < budget - 40:
        remaining = budget - len(text) - 20
        if remaining > 50:
            text += f"\n    content: {body[:remaining]}"
    if len(text) > budget:
        text = text[: max(budget - 3, 0)] + "..."
    return text


async def _extract(registry: ToolRegistry, tab_id: Any, timeout_s: float) -> Optional[Dict[str, Any]]:
    if not isinstance(tab_id, int) or not registry.has("extract_page_content"):
        return None
    result = await run_with_timeout(
        registry.execute("extract_page_content", {"tabId": tab_id}),
        timeout_s,
        fallback=None,
    )
    if not isinstance(result, dict) or result.get("error"):
        return None
    return result


def _tab_line(tab: Dict[str, Any], blocked: bool) -> str:
    entry = f"  [{tab.get('id')}] \"{tab.get('title', '')}\" - {tab.get('url', '')}"
    flags = []
    if tab.get("active"):
        flags.append("ACTIVE")
    if tab.get("pinned"):
        flags.append("pinned")
    group_id = tab.get("groupId")
    if group_id not in (None, -1):
        flags.append(f"group:{group_id}")
    if tab.get("audible"):
        flags.append("playing audio")
    if tab.get("discarded"):
        flags.append("discarded")
    if blocked:
        flags.append("blocked")
    if flags:
        entry += f" ({', '.join(flags)})"
    return entry


async def build_context(
    registry: ToolRegistry,
    blocked_patterns: Sequence[str],
    *,
    tabs: Optional[List[Dict[str, Any]]] = None,
    global_budget: int = 10000,
    max_chars_per_item: int = 800,
    extraction_timeout_s: float = 1.5,
) -> str:
    try:
        if tabs is None:
            listed = await registry.execute("list_tabs", {})
            if listed.get("error"):
                raise RuntimeError(listed["error"])
            tabs = list(listed.get("tabs") or [])
        groups: List[Dict[str, Any]] = []
        if registry.has("list_groups"):
            listed_groups = await registry.execute("list_groups", {})
            groups = list(listed_groups.get("groups") or [])

        per_item = item_budget(len(tabs), global_budget, max_chars_per_item)
        blocked = [is_blocked_url(tab.get("url"), blocked_patterns) for tab in tabs]
        extractions = await asyncio.gather(
            *(
                _noop() if blocked[i] else _extract(registry, tab.get("id"), extraction_timeout_s)
                for i, tab in enumerate(tabs)
            )
        )

        lines = []
        for tab, is_blocked, extraction in zip(tabs, blocked, extractions):
            entry = _tab_line(tab, is_blocked)
            if is_blocked:
                entry += f"\n    {BLOCKED_CONTENT_NOTE}"
            else:
                enriched = format_extraction(extraction, max(per_item - len(entry) - 10, 0))
                if enriched:
                    entry += f"\n    {enriched}"
            lines.append(entry)

        if groups:
            group_lines = "\n".join(
                f"  [{g.get('id')}] \"{g.get('title') or '(untitled)'}\" "
                f"({g.get('color')}, {'collapsed' if g.get('collapsed') else 'expanded'})"
                for g in groups
            )
        else:
            group_lines = "  (no groups)"

        return (
            "Current browser state:\n"
            f"TABS ({len(tabs)} total, budget: {per_item} chars/tab):\n"
            f"{chr(10).join(lines)}\n\n"
            f"TAB GROUPS ({len(groups)}):\n"
            f"{group_lines}"
        )
    except Exception:
        logger.warning("Failed to build browser context", exc_info=True)
        return CONTEXT_PLACEHOLDER


async def _noop() -> None:
    return None
