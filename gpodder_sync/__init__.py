"""Incremental sync of podcast subscriptions and episode actions with gpodder.net."""

from .errors import (
    AuthError,
    CheckpointConflict,
    DecodeError,
    GpodderError,
    TransportError,
    ValidationError,
)
from .models import (
    Checkpoint,
    ClientConfig,
    Credentials,
    Device,
    DeviceType,
    EpisodeAction,
    EpisodeActionFilter,
    EpisodeActionType,
    ResourceClass,
    SettingsScope,
    SubscriptionChange,
    SyncResult,
)
from .core import GpodderClient, SyncOperations, SyncState

__version__ = "0.1.0"

__all__ = [
    "AuthError",
    "Checkpoint",
    "CheckpointConflict",
    "ClientConfig",
    "Credentials",
    "DecodeError",
    "Device",
    "DeviceType",
    "EpisodeAction",
    "EpisodeActionFilter",
    "EpisodeActionType",
    "GpodderClient",
    "GpodderError",
    "ResourceClass",
    "SettingsScope",
    "SubscriptionChange",
    "SyncOperations",
    "SyncResult",
    "SyncState",
    "TransportError",
    "ValidationError",
]
