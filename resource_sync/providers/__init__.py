"""Provider adapters, one per resource family."""

from functools import partial

from resource_sync.config import Settings
from resource_sync.providers.gmail import GmailProvider
from resource_sync.providers.google_calendar import GoogleCalendarProvider
from resource_sync.sync.interfaces import ProviderFactory

PROVIDERS = {
    GoogleCalendarProvider.family: GoogleCalendarProvider,
    GmailProvider.family: GmailProvider,
}


def get_provider_factories(settings: Settings) -> dict[str, ProviderFactory]:
    """Factories ``(access_token) -> ProviderClient`` for every enabled family."""
    factories = {}
    for family in settings.enabled_family_list:
        if family not in PROVIDERS:
            raise ValueError(f"Unknown resource family: {family}")
        factories[family] = partial(PROVIDERS[family], page_size=settings.entity_page_size)
    return factories


__all__ = ["GmailProvider", "GoogleCalendarProvider", "PROVIDERS", "get_provider_factories"]
