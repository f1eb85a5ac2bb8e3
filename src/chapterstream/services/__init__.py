"""Service layer helpers (backend client, settings)."""

from .api import ApiError, ClientSettings, CollectionInProgressError, GenerationApiClient
from .settings import SecretVault, Settings, SettingsStore

__all__ = [
    "ApiError",
    "ClientSettings",
    "CollectionInProgressError",
    "GenerationApiClient",
    "SecretVault",
    "Settings",
    "SettingsStore",
]
