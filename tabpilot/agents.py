"""Prompt text and plan-line wording for the tool-calling assistant."""

import re
from typing import List, Optional, Sequence

SYSTEM_PROMPT = """You are TabPilot, a voice-controlled browser assistant. You act immediately and silently.

BEHAVIOR:
- Execute actions, don't talk
- Call tools to do the work
- No explanations, no status messages, no pleasantries
- Just execute and be done
- Exception: when returning tool_calls, include ONE concise planning sentence in content for the mission timeline
- Planning sentence format: "Plan: ..." (max ~12 words, action-focused)

TOOLS:
- List, switch, close, group, ungroup, move, pin, mute, reload, discard tabs
- Create tab groups (names: 1-2 words max, colors: blue/green/red/yellow/purple/cyan/orange/pink/grey)
- Web search, bookmarks, history
- Generate research reports from tab groups (scrapes all tabs, synthesizes with AI, opens as styled page)
- Page automation: inspect_page (discover interactive elements), interact_with_page (click/type/submit/press), wait_for_page (wait for load)

RULES:
1. Tab state is already provided. Do NOT call list_tabs, it has already been run for you
2. Never close all tabs in a window
3. Group names: SHORT (e.g. "Dev", "Docs", "Shopping")
4. If ambiguous, make your best guess and execute
5. For report generation: use generate_report with the group name or ID. Add a topic param to focus the report.
6. For "search X on [site]", prefer create_tab with the site's search URL (fastest, one step):
   YouTube: https://www.youtube.com/results?search_query=QUERY
   Google: https://www.google.com/search?q=QUERY
   Amazon: https://www.amazon.com/s?k=QUERY
   Reddit: https://www.reddit.com/search/?q=QUERY
   Wikipedia: https://en.wikipedia.org/w/index.php?search=QUERY
   GitHub: https://github.com/search?q=QUERY
   Twitter/X: https://x.com/search?q=QUERY
   Stack Overflow: https://stackoverflow.com/search?q=QUERY
7. For search/navigation intents ("find", "search for", "open", "click", "go to"), finish the job end-to-end. If user wants a specific page, do not stop at search results.
8. After EVERY create_tab call, the page is waited on and inspected for you; use that output to decide the next action.
9. For complex page interactions (fill forms, click specific buttons, navigate menus): use inspect_page to find elements, then interact_with_page to act on them. Always call wait_for_page after actions that cause navigation.
10. For result selection: use inspect_page output, click the best matching link with interact_with_page, call wait_for_page, and inspect again if still on a results page.
11. For references like "this guy", "this site", "that company", infer query from ACTIVE tab title/URL/content context.
12. Never call create_tab twice for the same URL in one command unless the user explicitly asks for multiple tabs.
13. If the target URL is already open, prefer switch_tab to that existing tab instead of create_tab.
14. Avoid redundant switch_tab calls. If a tab was just created (active by default), do not immediately switch to it again.
15. For each tool-calling pass, always include a brief "Plan: ..." line in assistant content.

COLOR GUIDE:
blue=work, green=dev, red=urgent, yellow=learning, purple=social, cyan=email, orange=shopping, pink=personal, grey=archive"""

TOOL_REASONING_PHRASES = {
    "switch_tab": "focus the target tab",
    "close_tabs": "close selected tabs",
    "close_duplicate_tabs": "remove duplicate tabs",
    "group_tabs": "group related tabs",
    "ungroup_tabs": "ungroup selected tabs",
    "list_groups": "check existing tab groups",
    "move_tabs": "reorder tabs",
    "create_tab": "open the requested page",
    "reload_tabs": "reload selected tabs",
    "discard_tabs": "unload tabs from memory",
    "duplicate_tab": "duplicate a tab",
    "pin_tabs": "pin or unpin tabs",
    "mute_tabs": "mute or unmute tabs",
    "collapse_group": "collapse or expand a group",
    "update_group": "update a tab group",
    "web_search": "run a web search",
    "list_search_engines": "check available search engines",
    "search_bookmarks": "search bookmarks",
    "create_bookmark": "save a bookmark",
    "search_history": "search browsing history",
    "generate_report": "generate the report",
    "inspect_page": "inspect page controls",
    "interact_with_page": "interact with page elements",
    "wait_for_page": "wait for page load",
}

PLAN_MAX_CHARS = 110
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_NO_RESPONSE_RE = re.compile(r"^\(?no response\)?$", re.IGNORECASE)
_PLAN_PREFIX_RE = re.compile(r"^plan\s*:", re.IGNORECASE)
_PLAN_BULLET_RE = re.compile(r"^plan\s*:\s*[-*]\s*", re.IGNORECASE)


def clean_plan_text(text: Optional[str]) -> Optional[str]:
    """First sentence of model content as a ``Plan:`` line, or None if unusable."""
    if not text or not isinstance(text, str):
        return None
    normalized = " ".join(text.split())
    if not normalized:
        return None
    concise = (_SENTENCE_SPLIT_RE.split(normalized)[0] or normalized).strip()
    if not concise or _NO_RESPONSE_RE.match(concise):
        return None
    if not _PLAN_PREFIX_RE.match(concise):
        concise = f"Plan: {concise}"
    concise = _PLAN_BULLET_RE.sub("Plan: ", concise)
    if len(concise) > PLAN_MAX_CHARS:
        concise = concise[: PLAN_MAX_CHARS - 3].rstrip() + "..."
    if concise[-1] not in ".!?":
        concise += "."
    return concise


def build_plan_line(tool_names: Sequence[str], content: Optional[str]) -> Optional[str]:
    explicit = clean_plan_text(content)
    if explicit:
        return explicit
    unique: List[str] = []
    for name in tool_names:
        if name == "list_tabs" or name in unique:
            continue
        unique.append(name)
    if not unique:
        return None
    phrases = [TOOL_REASONING_PHRASES.get(name) or f"run {name.replace('_', ' ')}" for name in unique]
    if len(phrases) == 1:
        return f"Plan: {phrases[0]}."
    if len(phrases) == 2:
        return f"Plan: {phrases[0]}, then {phrases[1]}."
    return f"Plan: {phrases[0]}, {phrases[1]}, and {len(phrases) - 2} more."


def follow_up_plan_line(created_count: int) -> str:
    if created_count == 1:
        return "Plan: verify the new page load and inspect available controls."
    return f"Plan: verify {created_count} new pages and inspect their controls."
