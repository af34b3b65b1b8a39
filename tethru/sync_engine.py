from __future__ import annotations

import functools
import logging
import threading
import time
from typing import Any

import requests

from tethru.change_detector import ChangeDetector
from tethru.config_manager import ConfigManager
from tethru.ledger import MappingLedger
from tethru.models import (
    AppConfig,
    CalendarMapping,
    CalendarSettings,
    CalendarToken,
    Contact,
    EntityKind,
    PendingSync,
    SyncAction,
    SyncResult,
    Task,
)
from tethru.oauth import AuthError, OAuthManager, parse_state
from tethru.registry import ProviderRegistry, build_default_registry
from tethru.scheduler import SyncScheduler, TimerFactory, thread_timer
from tethru.state_store import StateStore
from tethru.sync_orchestrator import SyncOrchestrator
from tethru.token_store import TokenStore

logger = logging.getLogger(__name__)


class SyncEngine:
    """Per-user entry point tying credentials, the ledger and change detection together."""

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        registry: ProviderRegistry | None = None,
        *,
        provider: str = "google",
        session: requests.Session | None = None,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.registry = registry or build_default_registry()
        self.provider = provider
        self.session = session or requests.Session()
        self._timer_factory = timer_factory
        self._secret = config_manager.load().security.token_secret
        self.token_store = TokenStore(state_store, self._secret)
        self._user_locks: dict[str, threading.RLock] = {}
        self._detectors: dict[str, ChangeDetector] = {}
        self._registry_lock = threading.Lock()
        self.scheduler = SyncScheduler(self)

    def _lock_for(self, user_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._user_locks[user_id] = lock
            return lock

    def oauth(self, config: AppConfig | None = None) -> OAuthManager:
        config = config or self.config_manager.load()
        return OAuthManager(
            config.google,
            self.token_store,
            self.state_store,
            self._secret,
            session=self.session,
        )

    # Connection lifecycle

    def connect(self, user_id: str, mobile: bool = False, login_hint: str | None = None) -> str:
        return self.oauth().initiate_auth(user_id, mobile=mobile, login_hint=login_hint)

    def complete_auth(self, code: str, state: str, user_id: str | None = None) -> tuple[bool, str | None]:
        """Finish the OAuth flow; returns ``(is_mobile, redirect_url)``.

        Without an explicit ``user_id`` the user is recovered from the signed
        state, which is how the mobile browser round-trip arrives.
        """
        oauth = self.oauth()
        if user_id is None:
            parsed = parse_state(state)
            if not parsed.get("uid") or not oauth.verify_state_signature(state):
                raise AuthError("Invalid state parameter - possible CSRF attack")
            user_id = str(parsed["uid"])
        with self._lock_for(user_id):
            _, is_mobile = oauth.handle_auth_callback(user_id, code, state)
            self.state_store.update_settings(user_id, connected=True)
        return is_mobile, (oauth.mobile_redirect_url() if is_mobile else None)

    def disconnect(self, user_id: str) -> dict[str, Any]:
        """Remove every synced event, forget the credential and mark the user disconnected."""
        config = self.config_manager.load()
        oauth = self.oauth(config)
        deleted = 0
        errors: list[str] = []
        with self._lock_for(user_id):
            with self._registry_lock:
                detector = self._detectors.pop(user_id, None)
            if detector is not None:
                detector.close()
            self.scheduler.unregister(user_id)
            token = self.token_store.load(user_id)
            if token is not None:
                orchestrator = self.orchestrator_for(user_id, token=token, config=config)
                try:
                    deleted, errors = orchestrator.delete_all_events()
                except AuthError as exc:
                    logger.warning("Could not remove calendar events for user %s: %s", user_id, exc)
                    errors.append(str(exc))
                token = orchestrator.token
            MappingLedger(self.state_store, user_id).delete_all()
            oauth.disconnect(user_id, token)
            self.state_store.update_settings(user_id, connected=False)
        logger.info("Disconnected calendar for user %s (%d events removed)", user_id, deleted)
        return {"deleted": deleted, "errors": errors}

    # Settings

    def get_settings(self, user_id: str) -> CalendarSettings:
        return self.state_store.get_settings(user_id)

    def update_settings(self, user_id: str, **toggles: Any) -> CalendarSettings:
        unknown = set(toggles) - set(CalendarSettings.TOGGLES)
        if unknown:
            raise ValueError(f"Unknown calendar settings: {', '.join(sorted(unknown))}")
        return self.state_store.update_settings(user_id, **toggles)

    def is_connected(self, user_id: str) -> bool:
        if not self.state_store.get_settings(user_id).connected:
            return False
        return self.token_store.load(user_id) is not None

    def mappings(self, user_id: str) -> list[CalendarMapping]:
        return MappingLedger(self.state_store, user_id).all()

    def list_calendars(self, user_id: str) -> list[dict[str, Any]]:
        orchestrator = self.orchestrator_for(user_id)
        calendars, _ = orchestrator.client.list_calendars(orchestrator.token)
        return calendars

    # Sync

    def orchestrator_for(
        self,
        user_id: str,
        token: CalendarToken | None = None,
        config: AppConfig | None = None,
    ) -> SyncOrchestrator:
        config = config or self.config_manager.load()
        if token is None:
            token = self.token_store.load(user_id)
            if token is None:
                raise AuthError("Google Calendar is not connected.")
        client = self.registry.create(
            self.provider,
            oauth=self.oauth(config),
            user_id=user_id,
            config=config.google,
        )
        return SyncOrchestrator(
            client,
            MappingLedger(self.state_store, user_id),
            self.state_store.get_settings(user_id),
            token,
            time_zone=config.sync.timezone,
            update_settings=functools.partial(self.state_store.update_settings, user_id),
            adopt_orphans=config.sync.adopt_orphans,
        )

    def sync_now(
        self,
        user_id: str,
        tasks: list[Task],
        contacts: list[Contact],
        trigger: str = "manual",
    ) -> SyncResult:
        started = time.monotonic()
        with self._lock_for(user_id):
            run_id = self.state_store.start_sync_run(user_id=user_id, trigger=trigger)
            try:
                if not self.is_connected(user_id):
                    raise AuthError("Google Calendar is not connected.")
                result = self.orchestrator_for(user_id).full_sync(tasks, contacts, trigger=trigger)
            except Exception as exc:
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="failed",
                    message=str(exc),
                    duration_ms=int((time.monotonic() - started) * 1000),
                    synced=0,
                    errors=[str(exc)],
                )
                raise
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success" if result.success else "partial",
                message=f"Synced {result.synced} items with {len(result.errors)} errors",
                duration_ms=result.duration_ms,
                synced=result.synced,
                errors=result.errors,
            )
        return result

    def dispatch(
        self,
        user_id: str,
        entry: PendingSync,
        tasks: dict[str, Task],
        contacts: dict[str, Contact],
    ) -> None:
        """Apply one debounced change against the latest observed collections."""
        with self._lock_for(user_id):
            if not self.is_connected(user_id):
                logger.debug("Skipping %s %s: calendar not connected", entry.kind.value, entry.entity_id)
                return
            orchestrator = self.orchestrator_for(user_id)
            if entry.kind is EntityKind.TASK:
                task = tasks.get(entry.entity_id)
                if entry.action is SyncAction.DELETE or task is None:
                    orchestrator.sync_task(Task(id=entry.entity_id), SyncAction.DELETE)
                    return
                contact = contacts.get(task.contact_id or "")
                orchestrator.sync_task(task, entry.action, contact.full_name if contact else None)
                return
            contact = contacts.get(entry.entity_id)
            if entry.action is SyncAction.DELETE or contact is None:
                orchestrator.cleanup_deleted_contact(entry.entity_id)
                return
            orchestrator.sync_contact_dates(contact, entry.action)

    def watcher(self, user_id: str, debounce_seconds: float | None = None) -> ChangeDetector:
        with self._registry_lock:
            detector = self._detectors.get(user_id)
            if detector is None:
                if debounce_seconds is None:
                    debounce_seconds = self.config_manager.load().sync.debounce_seconds
                detector = ChangeDetector(
                    functools.partial(self.dispatch, user_id),
                    debounce_seconds=debounce_seconds,
                    timer_factory=self._timer_factory,
                    is_active=functools.partial(self.is_connected, user_id),
                )
                self._detectors[user_id] = detector
                self.scheduler.register(user_id, detector.snapshot)
            return detector

    def shutdown(self) -> None:
        with self._registry_lock:
            detectors = list(self._detectors.values())
            self._detectors.clear()
        for detector in detectors:
            detector.close()
        self.scheduler.stop()

