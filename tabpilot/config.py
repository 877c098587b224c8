import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "TABPILOT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_MODEL_RING = [
    "gpt-5-nano",
    "gpt-4.1-mini",
    "gpt-4o-mini",
    "gpt-5-mini",
    "gpt-4.1",
    "gpt-4o",
    "gpt-5",
    "gpt-5.1",
    "gpt-5.1-chat-latest",
]


class AppSettings(BaseModel):
    # Model endpoint
    provider: Literal["openai", "ollama"] = "openai"
    api_key: Optional[str] = None
    model: str = "gpt-5-nano"
    model_ring: List[str] = Field(default_factory=lambda: list(DEFAULT_MODEL_RING))
    temperature: float = 1.0
    max_tokens: int = 10000
    openai_base_url: str = "https://api.openai.com/v1"
    ollama_base_url: str = "http://localhost:11434/v1"
    rpm_limit: int = Field(3, ge=1)
    rate_window_s: float = Field(60.0, gt=0)
    request_timeout_s: float = 45.0
    max_429_retries: int = 3
    default_429_delay_s: float = 3.0

    # Executor
    max_iterations: int = 10
    global_context_budget: int = 10000
    max_chars_per_item: int = 800
    content_extraction_timeout_s: float = 1.5
    context_build_timeout_s: float = 5.0
    auto_wait_timeout_ms: int = 7000
    recent_history_count: int = 5

    # Orchestrator
    confirm_timeout_s: float = 30.0
    unattended_destructive_policy: Literal["non-interactive", "deny", "allow"] = "non-interactive"
    history_max_entries: int = 500
    history_max_age_days: int = 30
    blocked_sites: str = ""

    # Service
    capability_base_url: str = "http://127.0.0.1:8765"
    database_path: str = "tabpilot.db"
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def base_url(self) -> str:
        return self.ollama_base_url if self.provider == "ollama" else self.openai_base_url

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("api_key"):
            data["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "provider": os.getenv("TABPILOT_PROVIDER"),
        "api_key": os.getenv("OPENAI_API_KEY"),
        "model": os.getenv("TABPILOT_MODEL"),
        "model_ring": os.getenv("TABPILOT_MODEL_RING"),
        "temperature": os.getenv("TABPILOT_TEMPERATURE"),
        "max_tokens": os.getenv("TABPILOT_MAX_TOKENS"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "ollama_base_url": os.getenv("OLLAMA_BASE_URL"),
        "rpm_limit": os.getenv("TABPILOT_RPM_LIMIT"),
        "request_timeout_s": os.getenv("TABPILOT_REQUEST_TIMEOUT_S"),
        "max_iterations": os.getenv("TABPILOT_MAX_ITERATIONS"),
        "confirm_timeout_s": os.getenv("TABPILOT_CONFIRM_TIMEOUT_S"),
        "blocked_sites": os.getenv("TABPILOT_BLOCKED_SITES"),
        "capability_base_url": os.getenv("TABPILOT_CAPABILITY_URL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "model_ring" in cleaned:
        cleaned["model_ring"] = [m.strip() for m in cleaned["model_ring"].split(",") if m.strip()]
    for key in ("max_tokens", "rpm_limit", "max_iterations", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("temperature", "request_timeout_s", "confirm_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "blocked_sites" in cleaned:
        # Env values cannot carry newlines comfortably; accept ';' as a separator.
        cleaned["blocked_sites"] = "\n".join(p.strip() for p in cleaned["blocked_sites"].split(";"))
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("api_key") and env_data.get("api_key"):
        merged["api_key"] = env_data["api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
