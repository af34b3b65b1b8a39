from __future__ import annotations

import logging
import os
from typing import Any, Callable, TypeVar

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field

from tethru.config_manager import SECRET_FIELDS, ConfigManager
from tethru.google_calendar import CalendarApiError
from tethru.ledger import LedgerError
from tethru.models import Contact, Task
from tethru.oauth import AuthError, parse_state
from tethru.state_store import StateStore
from tethru.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SettingsUpdateRequest(BaseModel):
    sync_tasks: bool | None = None
    sync_birthdays: bool | None = None
    sync_important_dates: bool | None = None
    sync_follow_ups: bool | None = None


class SyncRequest(BaseModel):
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    contacts: list[dict[str, Any]] = Field(default_factory=list)


class ChangesRequest(BaseModel):
    tasks: list[dict[str, Any]] | None = None
    contacts: list[dict[str, Any]] | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = self.sync_engine.scheduler


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    for section, key in SECRET_FIELDS:
        is_set = bool(str(config_dict.get(section, {}).get(key, "")).strip())
        meta.setdefault(section, {})[key] = {"is_masked": is_set}
    return meta


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop masked or blank secrets so a round-tripped form never wipes them."""
    sanitized = dict(payload)
    for section, key in SECRET_FIELDS:
        block = sanitized.get(section)
        if not isinstance(block, dict):
            continue
        block = dict(block)
        value = block.get(key)
        if value is not None and str(value).strip() in {"", "***"}:
            if str(current.get(section, {}).get(key, "")):
                block.pop(key, None)
            else:
                block[key] = ""
        if block:
            sanitized[section] = block
        else:
            sanitized.pop(section, None)
    return sanitized


def _parse_items(items: list[dict[str, Any]], parse: Callable[[dict[str, Any]], T], label: str) -> list[T]:
    try:
        return [parse(item) for item in items]
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid {label} payload: {exc}") from exc


def require_user_id(x_user_id: str = Header(default="")) -> str:
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="X-User-Id header is required")
    return user_id


def create_app() -> FastAPI:
    config_path = os.getenv("TETHRU_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TETHRU_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Tethru Calendar Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.sync_engine.shutdown()

    @app.exception_handler(AuthError)
    def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc), "reconnect": True})

    @app.exception_handler(CalendarApiError)
    def _calendar_error(request: Request, exc: CalendarApiError) -> JSONResponse:
        logger.warning("Calendar API error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(LedgerError)
    def _ledger_error(request: Request, exc: LedgerError) -> JSONResponse:
        logger.error("Mapping ledger error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    def _value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/calendar/connect")
    def connect_calendar(
        mobile: bool = False,
        login_hint: str | None = None,
        user_id: str = Depends(require_user_id),
    ) -> dict[str, str]:
        url = app.state.context.sync_engine.connect(user_id, mobile=mobile, login_hint=login_hint)
        return {"auth_url": url}

    @app.get("/auth/calendar/callback", response_model=None)
    def calendar_callback(
        state: str = "",
        code: str = "",
        error: str | None = None,
    ) -> Any:
        engine = app.state.context.sync_engine
        is_mobile = parse_state(state)["mobile"] if state else False
        try:
            if error:
                raise AuthError(f"Authorization was declined: {error}")
            if not code or not state:
                raise AuthError("Missing code or state in the authorization callback")
            is_mobile, redirect_url = engine.complete_auth(code, state)
        except AuthError as exc:
            if is_mobile:
                return RedirectResponse(engine.oauth().mobile_redirect_url(error=str(exc)), status_code=307)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if redirect_url:
            return RedirectResponse(redirect_url, status_code=307)
        return {"connected": True}

    @app.post("/api/calendar/disconnect")
    def disconnect_calendar(user_id: str = Depends(require_user_id)) -> dict[str, Any]:
        summary = app.state.context.sync_engine.disconnect(user_id)
        return {"message": "calendar disconnected", **summary}

    @app.get("/api/calendar/settings")
    def get_calendar_settings(user_id: str = Depends(require_user_id)) -> dict[str, Any]:
        return app.state.context.sync_engine.get_settings(user_id).to_dict()

    @app.put("/api/calendar/settings")
    def put_calendar_settings(
        request: SettingsUpdateRequest,
        user_id: str = Depends(require_user_id),
    ) -> dict[str, Any]:
        toggles = {key: value for key, value in request.model_dump().items() if value is not None}
        return app.state.context.sync_engine.update_settings(user_id, **toggles).to_dict()

    @app.get("/api/calendar/mappings")
    def list_mappings(user_id: str = Depends(require_user_id)) -> dict[str, Any]:
        mappings = app.state.context.sync_engine.mappings(user_id)
        return {"mappings": [item.to_dict() for item in mappings]}

    @app.get("/api/calendar/calendars")
    def list_calendars(user_id: str = Depends(require_user_id)) -> dict[str, Any]:
        return {"calendars": app.state.context.sync_engine.list_calendars(user_id)}

    @app.post("/api/calendar/sync")
    def sync_calendar(request: SyncRequest, user_id: str = Depends(require_user_id)) -> dict[str, Any]:
        tasks = _parse_items(request.tasks, Task.from_dict, "task")
        contacts = _parse_items(request.contacts, Contact.from_dict, "contact")
        result = app.state.context.sync_engine.sync_now(user_id, tasks, contacts, trigger="manual")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.post("/api/calendar/changes")
    def observe_changes(request: ChangesRequest, user_id: str = Depends(require_user_id)) -> dict[str, Any]:
        detector = app.state.context.sync_engine.watcher(user_id)
        queued = 0
        if request.tasks is not None:
            queued += detector.observe_tasks(_parse_items(request.tasks, Task.from_dict, "task"))
        if request.contacts is not None:
            queued += detector.observe_contacts(_parse_items(request.contacts, Contact.from_dict, "contact"))
        return {"queued": queued, "pending": len(detector.pending)}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20, user_id: str = Depends(require_user_id)) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(user_id, limit=limit)}

    return app


app = create_app()
