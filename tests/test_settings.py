import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from tabpilot.config import AppSettings, load_settings, save_settings


@pytest.mark.asyncio
async def test_get_settings_masks_api_key(app_factory):
    app, _, _, _ = app_factory(api_key="secret-key")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()
            assert data["settings"]["api_key"] == "********"
            assert data["settings"]["model_ring"] == ["model-a", "model-b"]


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_db(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            db = app.state.db
            before = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            res = await client.post("/settings", json={"max_iterations": 4, "blocked_sites": "casino.test\n# note"})
            assert res.status_code == 200
            after = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            assert after["cnt"] == before["cnt"] + 1
            assert app.state.executor.max_iterations == 4
            assert app.state.executor.blocked_patterns == ["casino.test"]

    saved = json.loads(config_path.read_text())
    assert saved["max_iterations"] == 4
    assert saved["api_key"] == "test-key"


@pytest.mark.asyncio
async def test_post_settings_ignores_masked_key_and_rejects_bad_values(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", json={"api_key": "********", "unattended_destructive_policy": "deny"})
            assert res.status_code == 200
            assert app.state.settings.api_key == "test-key"
            assert app.state.orchestrator.unattended_policy == "deny"

            bad = await client.post("/settings", json={"provider": "carrier-pigeon"})
            assert bad.status_code == 400
            no_budget = await client.post("/settings", json={"rpm_limit": 0})
            assert no_budget.status_code == 400
            assert app.state.settings.rpm_limit == 3
            assert app.state.settings.provider == "openai"


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"openai_base_url": "http://config"}))
    monkeypatch.setenv("OPENAI_BASE_URL", "http://env")
    monkeypatch.delenv("TABPILOT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.openai_base_url == "http://config"


def test_env_override_when_env_override_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"openai_base_url": "http://config"}))
    monkeypatch.setenv("OPENAI_BASE_URL", "http://env")
    monkeypatch.setenv("TABPILOT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.openai_base_url == "http://env"


def test_env_values_are_parsed(tmp_path, monkeypatch):
    monkeypatch.setenv("TABPILOT_MODEL_RING", "m1, m2 ,,m3")
    monkeypatch.setenv("TABPILOT_RPM_LIMIT", "5")
    monkeypatch.setenv("TABPILOT_BLOCKED_SITES", "a.test; b.test")
    monkeypatch.setenv("TABPILOT_PROVIDER", "ollama")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.model_ring == ["m1", "m2", "m3"]
    assert settings.rpm_limit == 5
    assert settings.blocked_sites == "a.test\nb.test"
    assert settings.base_url == settings.ollama_base_url


def test_env_api_key_fills_missing_config_key(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    save_settings(AppSettings(api_key=None, model="from-file"), config_path=config_path)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    settings = load_settings(config_path=config_path)
    assert settings.api_key == "sk-env"
    assert settings.model == "from-file"


def test_rate_settings_must_be_positive():
    with pytest.raises(ValueError):
        AppSettings(rpm_limit=0)
    with pytest.raises(ValueError):
        AppSettings(rate_window_s=0)
