from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from tabpilot.config import AppSettings
from tabpilot.db import Database
from tabpilot.executor import ToolExecutor
from tabpilot.main import create_app
from tabpilot.orchestrator import CommandOrchestrator, ConfirmationBroker, EventBus
from tabpilot.tools import ToolRegistry
from tests.fakes import FakeBrowser, ScriptedChatClient


DEFAULT_TABS: List[Dict[str, Any]] = [
    {"id": 1, "title": "Inbox", "url": "https://mail.example.com/inbox", "active": True},
    {"id": 2, "title": "Docs", "url": "https://docs.python.org/3/"},
]


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        api_key="test-key",
        openai_base_url="http://llm.test/v1",
        model="test-model",
        model_ring=["model-a", "model-b"],
        database_path=str(tmp_path / "test.db"),
        confirm_timeout_s=1.0,
        context_build_timeout_s=1.0,
        content_extraction_timeout_s=0.2,
        capability_base_url="http://bridge.test",
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "unit.db"))
    await database.init()
    return database


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser(tabs=[dict(t) for t in DEFAULT_TABS])


@pytest.fixture
def make_executor():
    def _factory(llm: ScriptedChatClient, browser: FakeBrowser, **kwargs) -> ToolExecutor:
        kwargs.setdefault("context_build_timeout_s", 1.0)
        kwargs.setdefault("content_extraction_timeout_s", 0.2)
        return ToolExecutor(llm, ToolRegistry(browser.implementations()), **kwargs)

    return _factory


@pytest.fixture
def make_orchestrator(db: Database, make_executor):
    def _factory(
        llm: ScriptedChatClient,
        browser: FakeBrowser,
        *,
        confirm_timeout_s: float = 1.0,
        executor_kwargs: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> CommandOrchestrator:
        executor = make_executor(llm, browser, **(executor_kwargs or {}))
        return CommandOrchestrator(executor, db, EventBus(db), ConfirmationBroker(confirm_timeout_s), **kwargs)

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: Optional[ScriptedChatClient] = None,
        fake_browser: Optional[FakeBrowser] = None,
        config_path: Optional[Path] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or ScriptedChatClient()
        browser = fake_browser or FakeBrowser(tabs=[dict(t) for t in DEFAULT_TABS])
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            llm_client=llm_client,
            capabilities=browser.implementations(),
            config_path=cfg_path,
        )
        return app, cfg_path, llm_client, browser

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm_client, browser = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_browser = browser  # type: ignore[attr-defined]
            yield http_client
