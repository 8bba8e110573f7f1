"""Domain records exchanged with gpodder.net."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar
from urllib.parse import urlparse

from ..errors import ValidationError

VALID_URL_SCHEMES = ("http", "https", "ftp")


def validate_url(url: str, field_name: str = "url") -> str:
    """Check that a podcast or episode URL is absolute and has a known scheme.

    Returns the URL unchanged so it can be used inline.
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError(f"{field_name} must be a non-empty string")
    parsed = urlparse(url)
    if parsed.scheme not in VALID_URL_SCHEMES or not parsed.netloc:
        raise ValidationError(f"{field_name} is not a valid podcast URL: {url!r}")
    return url


class ResourceClass(str, Enum):
    """The two independently synchronized data streams."""

    SUBSCRIPTIONS = "subscriptions"
    EPISODE_ACTIONS = "episode_actions"


class DeviceType(str, Enum):
    """Kinds of client devices the server knows about."""

    DESKTOP = "desktop"
    LAPTOP = "laptop"
    MOBILE = "mobile"
    SERVER = "server"
    OTHER = "other"

    def __str__(self) -> str:
        return self.value.capitalize()


class SettingsScope(str, Enum):
    """Where a settings dictionary is stored on the server."""

    ACCOUNT = "account"
    DEVICE = "device"
    PODCAST = "podcast"
    EPISODE = "episode"


class EpisodeActionType(str, Enum):
    """What a user did with an episode."""

    DOWNLOAD = "download"
    PLAY = "play"
    DELETE = "delete"
    NEW = "new"
    FLATTR = "flattr"


@dataclass(eq=False)
class Device:
    """A registered client endpoint under one account."""

    id: str
    caption: str = ""
    type: DeviceType = DeviceType.OTHER
    subscriptions: int = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Device):
            return NotImplemented
        return self.id == other.id

    def __lt__(self, other: "Device") -> bool:
        return self.id < other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __str__(self) -> str:
        return f"{str(self.type)} {self.caption} (id={self.id})"


@dataclass(frozen=True)
class SubscriptionChange:
    """Podcast URLs added and removed on one device.

    A URL is never in both sets. ``timestamp`` is the server time at which the
    change was accepted, or None for changes not yet seen by the server.
    """

    added: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()
    timestamp: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "added", frozenset(self.added))
        object.__setattr__(self, "removed", frozenset(self.removed))
        overlap = self.added & self.removed
        if overlap:
            raise ValidationError(
                f"URLs cannot be both added and removed: {sorted(overlap)}"
            )

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed

    def apply_to(self, subscriptions: set[str]) -> set[str]:
        """Return a copy of ``subscriptions`` with this change applied."""
        return (set(subscriptions) | self.added) - self.removed


@dataclass(frozen=True)
class EpisodeAction:
    """A timestamped event describing what a user did with one episode."""

    podcast: str
    episode: str
    action: EpisodeActionType
    timestamp: int
    device: str | None = None
    started: int | None = None
    position: int | None = None
    total: int | None = None

    def validate(self) -> "EpisodeAction":
        """Raise ValidationError if the action breaks a domain invariant."""
        validate_url(self.podcast, "podcast")
        validate_url(self.episode, "episode")
        if not isinstance(self.action, EpisodeActionType):
            raise ValidationError(f"Unknown episode action: {self.action!r}")
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, int):
            raise ValidationError("timestamp must be an integer (seconds since epoch)")
        if self.timestamp < 0:
            raise ValidationError("timestamp must not be negative")

        play_fields = {"started": self.started, "position": self.position, "total": self.total}
        if self.action is EpisodeActionType.PLAY:
            if self.position is None:
                raise ValidationError("play actions require a position")
            for name, value in play_fields.items():
                if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                    raise ValidationError(f"{name} must be a non-negative integer")
            if self.total is not None and self.position > self.total:
                raise ValidationError(
                    f"position ({self.position}) is greater than total ({self.total})"
                )
        else:
            present = [name for name, value in play_fields.items() if value is not None]
            if present:
                raise ValidationError(
                    f"{', '.join(present)} only allowed on play actions, not {self.action.value}"
                )
        return self

    @property
    def key(self) -> tuple[str | None, str, str, int, str]:
        """Identity of the action for de-duplication."""
        return (self.device, self.podcast, self.episode, self.timestamp, self.action.value)

    def for_device(self, device_id: str) -> "EpisodeAction":
        """Return this action stamped with ``device_id`` if it has no device."""
        if self.device is not None:
            return self
        return EpisodeAction(
            podcast=self.podcast,
            episode=self.episode,
            action=self.action,
            timestamp=self.timestamp,
            device=device_id,
            started=self.started,
            position=self.position,
            total=self.total,
        )

    @classmethod
    def play(
        cls,
        podcast: str,
        episode: str,
        timestamp: int,
        position: int,
        started: int | None = None,
        total: int | None = None,
        device: str | None = None,
    ) -> "EpisodeAction":
        """Create a validated play action."""
        return cls(
            podcast=podcast,
            episode=episode,
            action=EpisodeActionType.PLAY,
            timestamp=timestamp,
            device=device,
            started=started,
            position=position,
            total=total,
        ).validate()

    @classmethod
    def simple(
        cls,
        action: EpisodeActionType,
        podcast: str,
        episode: str,
        timestamp: int,
        device: str | None = None,
    ) -> "EpisodeAction":
        """Create a validated download, delete, new or flattr action."""
        return cls(
            podcast=podcast,
            episode=episode,
            action=action,
            timestamp=timestamp,
            device=device,
        ).validate()


@dataclass(frozen=True)
class EpisodeActionFilter:
    """Optional slice of the episode action stream to download.

    ``podcast``, ``device`` and ``aggregated`` are sent to the server; the
    ``episode`` and ``actions`` parts are applied to the downloaded batch.
    ``aggregated`` alone does not narrow: it still covers every episode, only
    collapsed to the latest action each.
    """

    podcast: str | None = None
    device: str | None = None
    episode: str | None = None
    actions: frozenset[EpisodeActionType] = frozenset()
    aggregated: bool = False

    @property
    def narrows(self) -> bool:
        """True if the filter hides part of the action stream."""
        return bool(self.podcast or self.device or self.episode or self.actions)

    def matches(self, action: EpisodeAction) -> bool:
        if self.podcast is not None and action.podcast != self.podcast:
            return False
        if self.device is not None and action.device != self.device:
            return False
        if self.episode is not None and action.episode != self.episode:
            return False
        if self.actions and action.action not in self.actions:
            return False
        return True


@dataclass(frozen=True, order=True)
class Checkpoint:
    """Opaque server cursor marking the last fully merged position."""

    cursor: int

    def __str__(self) -> str:
        return str(self.cursor)


def checkpoint_since(checkpoint: Checkpoint | None) -> int:
    """Value for the ``since`` query parameter. No checkpoint means a full resync."""
    return checkpoint.cursor if checkpoint is not None else 0


@dataclass(frozen=True)
class SubscriptionConflict:
    """A URL changed in opposite directions locally and on the server."""

    url: str
    local: str  # "add" or "remove"
    remote: str
    resolution: str


T = TypeVar("T")


@dataclass
class SyncResult(Generic[T]):
    """Outcome of one merge cycle."""

    resource_class: ResourceClass
    device_id: str
    previous_checkpoint: Checkpoint | None
    checkpoint: Checkpoint | None  # unchanged by filtered syncs
    applied: T  # remote changes applied locally
    confirmed: T  # local changes the server accepted
    conflicts: list[SubscriptionConflict] = field(default_factory=list)
    url_rewrites: dict[str, str] = field(default_factory=dict)
    state: Any = None  # merged local subscriptions or action log, if supplied

    @property
    def advanced(self) -> bool:
        return self.previous_checkpoint != self.checkpoint


# ---------------------------------------------------------------------------
# Directory records
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class Podcast:
    """Podcast metadata from the directory, search, toplist or suggestions."""

    url: str
    title: str = ""
    description: str = ""
    subscribers: int = 0
    subscribers_last_week: int = 0
    logo_url: str | None = None
    scaled_logo_url: str | None = None
    website: str | None = None
    mygpo_link: str | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Podcast):
            return NotImplemented
        return self.url == other.url

    def __hash__(self) -> int:
        return hash(self.url)

    def __str__(self) -> str:
        return f"{self.title}: {self.description} <{self.url}>"


@dataclass(eq=False)
class Episode:
    """Episode metadata from the directory or the favorites list."""

    title: str
    url: str
    podcast_title: str
    podcast_url: str
    description: str = ""
    website: str | None = None
    mygpo_link: str | None = None
    released: str | None = None  # ISO 8601, as sent by the server

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Episode):
            return NotImplemented
        return self.url == other.url

    def __hash__(self) -> int:
        return hash(self.url)

    def __str__(self) -> str:
        return f"{self.title}: {self.url}"


@dataclass(eq=False)
class Tag:
    """A directory tag with its usage count."""

    title: str
    tag: str
    usage: int = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tag):
            return NotImplemented
        return self.tag == other.tag

    def __lt__(self, other: "Tag") -> bool:
        return self.tag < other.tag

    def __hash__(self) -> int:
        return hash(self.tag)

    def __str__(self) -> str:
        return f"{self.tag}: {self.title}"
