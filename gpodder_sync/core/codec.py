"""Translation between domain records and the gpodder.net JSON schema.

Every ``decode_*`` function validates strictly: a missing required field,
a value of the wrong type or an unknown enum value raises DecodeError with
the JSON path of the offending field. Fields the server adds that we do not
know about are ignored.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..errors import DecodeError, ValidationError
from ..models.records import (
    Device,
    DeviceType,
    Episode,
    EpisodeAction,
    EpisodeActionType,
    Podcast,
    SubscriptionChange,
    Tag,
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

_MISSING = object()


@dataclass(frozen=True)
class UploadResponse:
    """Server reply to an upload of subscription changes or episode actions."""

    timestamp: int
    update_urls: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EpisodeActionsResponse:
    """Downloaded episode actions and the server cursor, if one was sent."""

    actions: list[EpisodeAction]
    timestamp: int | None


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _type_name(value: Any) -> str:
    return "null" if value is None else type(value).__name__


def _expect_dict(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(f"expected object, got {_type_name(value)}", path)
    return value


def _expect_list(value: Any, path: str) -> list[Any]:
    if not isinstance(value, list):
        raise DecodeError(f"expected array, got {_type_name(value)}", path)
    return value


def _expect_str(value: Any, path: str) -> str:
    if not isinstance(value, str):
        raise DecodeError(f"expected string, got {_type_name(value)}", path)
    return value


def _expect_int(value: Any, path: str) -> int:
    # bool is an int subclass; the server never means true/false as a number
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"expected integer, got {_type_name(value)}", path)
    return value


def _get(data: dict[str, Any], key: str, path: str, required: bool = True) -> Any:
    value = data.get(key, _MISSING)
    if value is _MISSING:
        if required:
            raise DecodeError("missing required field", f"{path}.{key}")
        return None
    return value


def _req_str(data: dict[str, Any], key: str, path: str) -> str:
    return _expect_str(_get(data, key, path), f"{path}.{key}")


def _opt_str(data: dict[str, Any], key: str, path: str, default: str | None = None) -> str | None:
    value = _get(data, key, path, required=False)
    if value is None:
        return default
    return _expect_str(value, f"{path}.{key}")


def _opt_int(data: dict[str, Any], key: str, path: str, default: int | None = None) -> int | None:
    value = _get(data, key, path, required=False)
    if value is None:
        return default
    return _expect_int(value, f"{path}.{key}")


def _str_list(value: Any, path: str) -> list[str]:
    items = _expect_list(value, path)
    return [_expect_str(item, f"{path}[{i}]") for i, item in enumerate(items)]


def _enum(enum_cls: Any, value: Any, path: str) -> Any:
    raw = _expect_str(value, path)
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise DecodeError(f"unknown value {raw!r} (expected one of: {allowed})", path) from None


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any, path: str = "$") -> int:
    """Decode an ISO 8601 string or epoch integer to seconds since epoch (UTC).

    Naive ISO timestamps are UTC, which is what gpodder.net sends.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise DecodeError(f"invalid ISO 8601 timestamp {value!r}", path) from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())

    seconds = _expect_int(value, path)
    if seconds < 0:
        raise DecodeError("timestamp must not be negative", path)
    return seconds


def format_timestamp(seconds: int) -> str:
    """Encode seconds since epoch the way the server writes timestamps."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime(TIMESTAMP_FORMAT)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


def encode_subscription_delta(change: SubscriptionChange) -> dict[str, list[str]]:
    """Request body for uploading subscription changes."""
    return {
        "add": sorted(change.added),
        "remove": sorted(change.removed),
    }


def decode_subscription_changes(data: Any, path: str = "$") -> SubscriptionChange:
    """Decode ``{"add": [...], "remove": [...], "timestamp": int}``."""
    obj = _expect_dict(data, path)
    added = _str_list(_get(obj, "add", path), f"{path}.add")
    removed = _str_list(_get(obj, "remove", path), f"{path}.remove")
    timestamp = _expect_int(_get(obj, "timestamp", path), f"{path}.timestamp")
    try:
        return SubscriptionChange(added=frozenset(added), removed=frozenset(removed), timestamp=timestamp)
    except ValidationError as e:
        raise DecodeError(str(e), path) from e


def decode_upload_response(data: Any, path: str = "$") -> UploadResponse:
    """Decode ``{"timestamp": int, "update_urls": [[old, new], ...]}``.

    An empty ``new`` URL means the server rejected the old one.
    """
    obj = _expect_dict(data, path)
    timestamp = _expect_int(_get(obj, "timestamp", path), f"{path}.timestamp")

    rewrites: dict[str, str] = {}
    raw_updates = _get(obj, "update_urls", path, required=False)
    if raw_updates is not None:
        for i, pair in enumerate(_expect_list(raw_updates, f"{path}.update_urls")):
            pair_path = f"{path}.update_urls[{i}]"
            items = _expect_list(pair, pair_path)
            if len(items) != 2:
                raise DecodeError(f"expected [old, new] pair, got {len(items)} items", pair_path)
            old = _expect_str(items[0], f"{pair_path}[0]")
            new = _expect_str(items[1], f"{pair_path}[1]")
            if old != new:
                rewrites[old] = new
    return UploadResponse(timestamp=timestamp, update_urls=rewrites)


def decode_url_list(data: Any, path: str = "$") -> list[str]:
    """Decode a plain JSON array of URLs."""
    return _str_list(data, path)


# ---------------------------------------------------------------------------
# Episode actions
# ---------------------------------------------------------------------------


def encode_episode_action(action: EpisodeAction) -> dict[str, Any]:
    """Encode one action, leaving out fields that are not set."""
    data: dict[str, Any] = {
        "podcast": action.podcast,
        "episode": action.episode,
        "action": action.action.value,
        "timestamp": format_timestamp(action.timestamp),
    }
    if action.device is not None:
        data["device"] = action.device
    for name in ("started", "position", "total"):
        value = getattr(action, name)
        if value is not None:
            data[name] = value
    return data


def encode_episode_actions(actions: list[EpisodeAction]) -> list[dict[str, Any]]:
    return [encode_episode_action(action) for action in actions]


def decode_episode_action(data: Any, path: str = "$") -> EpisodeAction:
    obj = _expect_dict(data, path)
    action = EpisodeAction(
        podcast=_req_str(obj, "podcast", path),
        episode=_req_str(obj, "episode", path),
        action=_enum(EpisodeActionType, _get(obj, "action", path), f"{path}.action"),
        timestamp=parse_timestamp(_get(obj, "timestamp", path), f"{path}.timestamp"),
        device=_opt_str(obj, "device", path),
        started=_opt_int(obj, "started", path),
        position=_opt_int(obj, "position", path),
        total=_opt_int(obj, "total", path),
    )
    try:
        return action.validate()
    except ValidationError as e:
        raise DecodeError(str(e), path) from e


def decode_episode_actions(data: Any, path: str = "$") -> list[EpisodeAction]:
    items = _expect_list(data, path)
    return [decode_episode_action(item, f"{path}[{i}]") for i, item in enumerate(items)]


def decode_episode_actions_response(data: Any, path: str = "$") -> EpisodeActionsResponse:
    """Decode ``{"actions": [...], "timestamp": int}``; the cursor is optional."""
    obj = _expect_dict(data, path)
    actions = decode_episode_actions(_get(obj, "actions", path), f"{path}.actions")
    timestamp = _opt_int(obj, "timestamp", path)
    return EpisodeActionsResponse(actions=actions, timestamp=timestamp)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


def decode_device(data: Any, path: str = "$") -> Device:
    obj = _expect_dict(data, path)
    return Device(
        id=_req_str(obj, "id", path),
        caption=_req_str(obj, "caption", path),
        type=_enum(DeviceType, _get(obj, "type", path), f"{path}.type"),
        subscriptions=_opt_int(obj, "subscriptions", path, default=0) or 0,
    )


def decode_devices(data: Any, path: str = "$") -> list[Device]:
    items = _expect_list(data, path)
    return [decode_device(item, f"{path}[{i}]") for i, item in enumerate(items)]


def encode_device_update(caption: str | None = None, device_type: DeviceType | None = None) -> dict[str, str]:
    data: dict[str, str] = {}
    if caption is not None:
        data["caption"] = caption
    if device_type is not None:
        data["type"] = DeviceType(device_type).value
    return data


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


def decode_podcast(data: Any, path: str = "$") -> Podcast:
    obj = _expect_dict(data, path)
    return Podcast(
        url=_req_str(obj, "url", path),
        title=_opt_str(obj, "title", path, default="") or "",
        description=_opt_str(obj, "description", path, default="") or "",
        subscribers=_opt_int(obj, "subscribers", path, default=0) or 0,
        subscribers_last_week=_opt_int(obj, "subscribers_last_week", path, default=0) or 0,
        logo_url=_opt_str(obj, "logo_url", path),
        scaled_logo_url=_opt_str(obj, "scaled_logo_url", path),
        website=_opt_str(obj, "website", path),
        mygpo_link=_opt_str(obj, "mygpo_link", path),
    )


def decode_podcasts(data: Any, path: str = "$") -> list[Podcast]:
    items = _expect_list(data, path)
    return [decode_podcast(item, f"{path}[{i}]") for i, item in enumerate(items)]


def decode_episode(data: Any, path: str = "$") -> Episode:
    obj = _expect_dict(data, path)
    return Episode(
        title=_req_str(obj, "title", path),
        url=_req_str(obj, "url", path),
        podcast_title=_req_str(obj, "podcast_title", path),
        podcast_url=_req_str(obj, "podcast_url", path),
        description=_opt_str(obj, "description", path, default="") or "",
        website=_opt_str(obj, "website", path),
        mygpo_link=_opt_str(obj, "mygpo_link", path),
        released=_opt_str(obj, "released", path),
    )


def decode_episodes(data: Any, path: str = "$") -> list[Episode]:
    items = _expect_list(data, path)
    return [decode_episode(item, f"{path}[{i}]") for i, item in enumerate(items)]


def decode_tag(data: Any, path: str = "$") -> Tag:
    obj = _expect_dict(data, path)
    return Tag(
        title=_req_str(obj, "title", path),
        tag=_req_str(obj, "tag", path),
        usage=_opt_int(obj, "usage", path, default=0) or 0,
    )


def decode_tags(data: Any, path: str = "$") -> list[Tag]:
    items = _expect_list(data, path)
    return [decode_tag(item, f"{path}[{i}]") for i, item in enumerate(items)]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def decode_settings(data: Any, path: str = "$") -> dict[str, Any]:
    """Settings are a flat object of arbitrary JSON values."""
    return dict(_expect_dict(data, path))


def encode_settings_update(
    set_values: dict[str, Any] | None = None,
    remove: list[str] | None = None,
) -> dict[str, Any]:
    set_values = dict(set_values or {})
    remove = list(remove or [])
    both = set(set_values) & set(remove)
    if both:
        raise ValidationError(f"Settings cannot be both set and removed: {sorted(both)}")
    return {"set": set_values, "remove": remove}
