from __future__ import annotations

from typing import Any, Callable

from tethru.google_calendar import GoogleCalendarClient
from tethru.models import GoogleConfig
from tethru.oauth import OAuthManager, TokenCallback

ClientFactory = Callable[..., Any]


class ProviderRegistry:
    """Calendar client factories keyed by provider name.

    Built once at startup and handed to the sync engine, so tests can swap a
    provider without touching module state.
    """

    def __init__(self) -> None:
        self._factories: dict[str, ClientFactory] = {}

    def register(self, name: str, factory: ClientFactory) -> None:
        key = name.strip().lower()
        if not key:
            raise ValueError("provider name must be non-empty")
        self._factories[key] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def create(
        self,
        name: str,
        *,
        oauth: OAuthManager,
        user_id: str,
        config: GoogleConfig,
        on_token_refreshed: TokenCallback | None = None,
    ) -> Any:
        try:
            factory = self._factories[name.strip().lower()]
        except KeyError:
            known = ", ".join(self.names()) or "none"
            raise ValueError(f"Unknown calendar provider: {name} (registered: {known})") from None
        return factory(
            oauth=oauth,
            user_id=user_id,
            config=config,
            on_token_refreshed=on_token_refreshed,
        )


def _google_factory(
    *,
    oauth: OAuthManager,
    user_id: str,
    config: GoogleConfig,
    on_token_refreshed: TokenCallback | None = None,
) -> GoogleCalendarClient:
    return GoogleCalendarClient(
        oauth,
        user_id,
        calendar_id=config.calendar_id,
        timeout_seconds=config.timeout_seconds,
        on_token_refreshed=on_token_refreshed,
    )


def build_default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("google", _google_factory)
    return registry
