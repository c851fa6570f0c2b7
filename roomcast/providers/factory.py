"""Provider lookup by calendar provider kind.

Concrete adapters are registered by the host application at startup:

    register_provider("ICS", IcsProvider)
    provider = get_provider(calendar.provider)
"""

import logging
from typing import Callable, Dict

from roomcast.providers.base import CalendarProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[], CalendarProvider]

_factories: Dict[str, ProviderFactory] = {}


class UnknownProviderError(Exception):
    """No adapter registered for a calendar's provider kind."""


def register_provider(kind: str, factory: ProviderFactory) -> None:
    """Register (or replace) the adapter factory for a provider kind."""
    kind = kind.upper()
    if kind in _factories:
        logger.warning(f"Replacing calendar provider for {kind}")
    _factories[kind] = factory


def unregister_provider(kind: str) -> None:
    _factories.pop(kind.upper(), None)


def registered_providers() -> list[str]:
    return sorted(_factories)


def get_provider(kind: str) -> CalendarProvider:
    """Build a fresh adapter for the given provider kind."""
    factory = _factories.get((kind or "").upper())
    if factory is None:
        raise UnknownProviderError(f"Unknown calendar provider: {kind}")
    return factory()
