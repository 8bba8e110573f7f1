"""Data models for the gpodder.net sync client."""

from .config import ClientConfig, Credentials
from .records import (
    Checkpoint,
    Device,
    DeviceType,
    Episode,
    EpisodeAction,
    EpisodeActionFilter,
    EpisodeActionType,
    Podcast,
    ResourceClass,
    SettingsScope,
    SubscriptionChange,
    SubscriptionConflict,
    SyncResult,
    Tag,
    validate_url,
)

__all__ = [
    "Checkpoint",
    "ClientConfig",
    "Credentials",
    "Device",
    "DeviceType",
    "Episode",
    "EpisodeAction",
    "EpisodeActionFilter",
    "EpisodeActionType",
    "Podcast",
    "ResourceClass",
    "SettingsScope",
    "SubscriptionChange",
    "SubscriptionConflict",
    "SyncResult",
    "Tag",
    "validate_url",
]
