import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Mapping, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .capabilities import HttpCapabilitySurface
from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .db import Database
from .executor import ToolExecutor
from .llm import ChatClient, ModelRotation
from .orchestrator import CommandOrchestrator, ConfirmationBroker, EventBus
from .schemas import ConfirmResponseRequest, SubmitCommandRequest
from .tools import ToolFn, ToolRegistry
from .url_policy import normalize_pattern_list


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_orchestrator(request: Request) -> CommandOrchestrator:
    return request.app.state.orchestrator


def get_llm_client(request: Request) -> ChatClient:
    return request.app.state.llm_client


def get_registry(request: Request) -> ToolRegistry:
    return request.app.state.registry


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def apply_settings(app: FastAPI, settings: AppSettings) -> None:
    """Push updated settings into the live client, executor and orchestrator."""
    app.state.settings = settings
    llm = app.state.llm_client
    if isinstance(llm, ChatClient):
        llm.base_url = settings.base_url.rstrip("/")
        llm.provider = settings.provider
        llm.api_key = settings.api_key
        llm.model = settings.model
        llm.temperature = settings.temperature
        llm.max_tokens = settings.max_tokens
        llm.request_timeout_s = settings.request_timeout_s
        llm.max_429_retries = settings.max_429_retries
        llm.default_429_delay_s = settings.default_429_delay_s
        rotation = llm.rotation
        if (
            rotation.models != list(settings.model_ring or [settings.model])
            or rotation.rpm_limit != settings.rpm_limit
            or rotation.window_s != settings.rate_window_s
        ):
            llm.rotation = ModelRotation(
                settings.model_ring or [settings.model], rpm_limit=settings.rpm_limit, window_s=settings.rate_window_s
            )
    executor: ToolExecutor = app.state.executor
    executor.blocked_patterns = normalize_pattern_list(settings.blocked_sites)
    executor.max_iterations = settings.max_iterations
    executor.global_context_budget = settings.global_context_budget
    executor.max_chars_per_item = settings.max_chars_per_item
    executor.content_extraction_timeout_s = settings.content_extraction_timeout_s
    executor.context_build_timeout_s = settings.context_build_timeout_s
    executor.auto_wait_timeout_ms = settings.auto_wait_timeout_ms
    orchestrator: CommandOrchestrator = app.state.orchestrator
    orchestrator.broker.timeout_s = settings.confirm_timeout_s
    orchestrator.unattended_policy = settings.unattended_destructive_policy
    orchestrator.recent_history_count = settings.recent_history_count
    orchestrator.history_max_entries = settings.history_max_entries
    orchestrator.history_max_age_days = settings.history_max_age_days


router = APIRouter()


@router.get("/api/status")
async def get_status(
    orchestrator: CommandOrchestrator = Depends(get_orchestrator),
    llm_client: ChatClient = Depends(get_llm_client),
):
    current = orchestrator.current_command
    rotation = getattr(llm_client, "rotation", None)
    return {
        "status": "processing" if orchestrator.processing else "idle",
        "current_command": current.model_dump() if current else None,
        "queue_length": orchestrator.queue_length,
        "observers": orchestrator.bus.observer_count,
        "pending_confirmations": len(orchestrator.broker.pending),
        "models": rotation.snapshot() if rotation is not None else [],
    }


@router.post("/api/commands")
async def submit_command(
    payload: SubmitCommandRequest,
    orchestrator: CommandOrchestrator = Depends(get_orchestrator),
):
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Command text required.")
    command, future, position = await orchestrator.enqueue(text, payload.source)
    if not payload.wait:
        return {"command_id": command.id, "queue_position": position, "state": command.state}
    result = await future
    return result.model_dump()


@router.post("/api/commands/cancel")
async def cancel_command(orchestrator: CommandOrchestrator = Depends(get_orchestrator)):
    current = orchestrator.current_command
    if current is None or not orchestrator.cancel():
        raise HTTPException(status_code=409, detail="No command is running")
    return {"ok": True, "command_id": current.id}


@router.get("/api/commands/{command_id}/events")
async def list_command_events(command_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    events = await db.list_events(command_id, after_seq=after_seq)
    if not events and after_seq == 0 and await db.get_history_entry(command_id) is None:
        raise HTTPException(status_code=404, detail="Command not found")
    last_seq = events[-1]["seq"] if events else after_seq
    return {"events": events, "last_seq": last_seq}


@router.get("/api/commands/{command_id}/stream")
async def stream_command_events(
    command_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Preload past events then stream new ones
    async def event_generator():
        queue = await bus.subscribe(command_id)
        try:
            past = await db.list_events(command_id)
            last_seq = 0
            for ev in past:
                last_seq = ev["seq"]
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                if ev["seq"] <= last_seq:
                    continue
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(command_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.post("/api/confirm")
async def confirm_response(
    payload: ConfirmResponseRequest,
    orchestrator: CommandOrchestrator = Depends(get_orchestrator),
):
    if not orchestrator.resolve_confirmation(payload.confirm_id, payload.approved):
        raise HTTPException(status_code=404, detail="Confirmation not found or already resolved")
    return {"ok": True}


@router.get("/api/confirmations")
async def list_confirmations(orchestrator: CommandOrchestrator = Depends(get_orchestrator)):
    return {"confirmations": orchestrator.broker.list_pending()}


@router.get("/api/history")
async def get_history(limit: Optional[int] = None, db: Database = Depends(get_db)):
    if limit is not None and limit < 0:
        raise HTTPException(status_code=400, detail="limit must be >= 0")
    entries = await db.list_history(limit)
    return {"entries": [entry.model_dump() for entry in entries]}


@router.delete("/api/history")
async def clear_history(db: Database = Depends(get_db)):
    await db.clear_history()
    return {"ok": True}


@router.get("/api/tools")
async def list_tools(registry: ToolRegistry = Depends(get_registry)):
    return {"tools": registry.definitions()}


@router.get("/events")
async def stream_global_events(orchestrator: CommandOrchestrator = Depends(get_orchestrator)):
    # Attach now so presence is visible before the first event arrives.
    queue = await orchestrator.attach_observer()

    async def event_generator():
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await orchestrator.detach_observer(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object")
    if body.get("api_key") == "********":
        body.pop("api_key")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    apply_settings(request.app, new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[ChatClient] = None,
    capabilities: Optional[Mapping[str, ToolFn]] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            await app.state.orchestrator.shutdown()
            await app.state.llm_client.close()
            if app.state.surface is not None:
                await app.state.surface.close()

    app = FastAPI(title="TabPilot Command Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or ChatClient.from_settings(settings)
    app.state.surface = None
    if capabilities is None:
        app.state.surface = HttpCapabilitySurface(settings.capability_base_url)
        capabilities = app.state.surface.implementations()
    app.state.registry = ToolRegistry(capabilities)
    app.state.bus = EventBus(app.state.db)
    app.state.executor = ToolExecutor.from_settings(settings, app.state.llm_client, app.state.registry)
    app.state.orchestrator = CommandOrchestrator(
        app.state.executor,
        app.state.db,
        app.state.bus,
        ConfirmationBroker(settings.confirm_timeout_s),
        recent_history_count=settings.recent_history_count,
        history_max_entries=settings.history_max_entries,
        history_max_age_days=settings.history_max_age_days,
        unattended_policy=settings.unattended_destructive_policy,
    )
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


def build_default_app() -> FastAPI:
    return create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = load_settings()
    reload_enabled = os.getenv("TABPILOT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "tabpilot.main:build_default_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
