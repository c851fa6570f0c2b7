"""Calendar provider capability and credential handling."""

from roomcast.providers.base import (
    CalendarProvider,
    DateRange,
    ExternalEvent,
    ProviderError,
    ProviderSyncResult,
)
from roomcast.providers.credentials import (
    CredentialsError,
    decrypt_credentials,
    encrypt_credentials,
)
from roomcast.providers.factory import (
    UnknownProviderError,
    get_provider,
    register_provider,
    registered_providers,
    unregister_provider,
)

__all__ = [
    "CalendarProvider",
    "DateRange",
    "ExternalEvent",
    "ProviderError",
    "ProviderSyncResult",
    "CredentialsError",
    "decrypt_credentials",
    "encrypt_credentials",
    "UnknownProviderError",
    "get_provider",
    "register_provider",
    "registered_providers",
    "unregister_provider",
]
