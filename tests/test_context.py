import asyncio

import pytest

from tabpilot.context import BLOCKED_CONTENT_NOTE, CONTEXT_PLACEHOLDER, build_context, format_extraction, item_budget
from tabpilot.tools import ToolRegistry
from tests.fakes import FakeBrowser


EXTRACTION = {
    "meta": {"description": "Python docs", "ogSiteName": "Python.org", "author": ""},
    "breadcrumbs": "Docs > 3",
    "jsonLd": [{"type": "WebSite", "name": "Python"}],
    "headings": {"h1": ["Python 3 documentation"], "h2": ["Indices", "Meta"]},
    "bodyText": "Welcome! This is the official documentation for Python.",
}


def test_item_budget_splits_global_budget_with_cap():
    assert item_budget(4, 10000, 800) == 800
    assert item_budget(50, 10000, 800) == 200
    assert item_budget(0, 10000, 800) == 800


def test_format_extraction_orders_structured_fields_first():
    text = format_extraction(EXTRACTION, 800)
    lines = text.split("\n    ")
    assert lines[0] == "desc: Python docs"
    assert lines[1] == "site: Python.org"
    assert lines[2] == "path: Docs > 3"
    assert lines[3] == "structured: WebSite: Python"
    assert lines[4] == "h1: Python 3 documentation"
    assert lines[5] == "h2: Indices | Meta"
    assert lines[6].startswith("content: Welcome!")


def test_format_extraction_skips_body_when_budget_is_tight_and_trims():
    text = format_extraction(EXTRACTION, 60)
    assert len(text) == 60
    assert text.endswith("...")
    assert "content:" not in text
    assert format_extraction(None, 500) == ""
    assert format_extraction(EXTRACTION, 3) == ""
    assert format_extraction(EXTRACTION, 0) == ""


@pytest.mark.asyncio
async def test_build_context_lists_tabs_groups_and_page_signals():
    browser = FakeBrowser(
        tabs=[
            {"id": 1, "title": "Inbox", "url": "https://mail.example.com", "active": True, "pinned": True},
            {"id": 2, "title": "Docs", "url": "https://docs.python.org/3/", "groupId": 500, "audible": True},
        ],
        groups=[{"id": 500, "title": "Work", "color": "blue", "collapsed": False}],
    )
    browser.extractions[2] = EXTRACTION
    context = await build_context(ToolRegistry(browser.implementations()), [])
    assert context.startswith("Current browser state:\nTABS (2 total, budget: 800 chars/tab):")
    assert '  [1] "Inbox" - https://mail.example.com (ACTIVE, pinned)' in context
    assert '  [2] "Docs" - https://docs.python.org/3/ (group:500, playing audio)' in context
    assert "desc: Python docs" in context
    assert 'TAB GROUPS (1):\n  [500] "Work" (blue, expanded)' in context


@pytest.mark.asyncio
async def test_blocked_tabs_are_listed_without_content(browser):
    browser.extractions[1] = {"meta": {"description": "secret mail"}}
    context = await build_context(ToolRegistry(browser.implementations()), ["mail.example.com"])
    assert "(ACTIVE, blocked)" in context
    assert BLOCKED_CONTENT_NOTE in context
    assert "secret mail" not in context
    assert ("extract_page_content", {"tabId": 1}) not in browser.calls
    assert "TAB GROUPS (0):\n  (no groups)" in context


@pytest.mark.asyncio
async def test_prefetched_tabs_skip_list_call(browser):
    tabs = [{"id": 9, "title": "Given", "url": "https://given.test"}]
    context = await build_context(ToolRegistry(browser.implementations()), [], tabs=tabs)
    assert '[9] "Given"' in context
    assert "list_tabs" not in browser.call_names()


@pytest.mark.asyncio
async def test_slow_extraction_is_abandoned_per_tab(browser):
    browser.extractions[2] = EXTRACTION
    browser.gates["extract_page_content"] = asyncio.Event()
    context = await build_context(ToolRegistry(browser.implementations()), [], extraction_timeout_s=0.05)
    assert '[2] "Docs"' in context
    assert "desc:" not in context


@pytest.mark.asyncio
async def test_list_failure_yields_placeholder(browser):
    browser.failures["list_tabs"] = RuntimeError("extension gone")
    context = await build_context(ToolRegistry(browser.implementations()), [])
    assert context == CONTEXT_PLACEHOLDER


@pytest.mark.asyncio
async def test_exhausted_item_budget_adds_no_content_line(browser):
    browser.extractions[2] = EXTRACTION
    context = await build_context(ToolRegistry(browser.implementations()), [], global_budget=60)
    docs_line = next(line for line in context.splitlines() if line.startswith("  [2]"))
    following = context.split(docs_line, 1)[1].splitlines()[1:2]
    assert not any(line.strip() == "..." for line in following)
    assert "desc:" not in context
