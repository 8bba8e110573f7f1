"""Shared fixtures: an in-memory gpodder.net server behind the Transport interface."""

import json
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

import pytest

from gpodder_sync.core.auth import GpodderAuth
from gpodder_sync.core.operations import SyncOperations
from gpodder_sync.core.state import SyncState
from gpodder_sync.core.transport import TransportResponse
from gpodder_sync.errors import TransportError
from gpodder_sync.models.config import ClientConfig, Credentials

USERNAME = "alice"
PASSWORD = "secret"

FEED_A = "https://feeds.example.com/a.xml"
FEED_B = "https://feeds.example.com/b.xml"
FEED_C = "https://feeds.example.com/c.xml"
EPISODE_1 = "https://media.example.com/a/1.mp3"
EPISODE_2 = "https://media.example.com/a/2.mp3"


@dataclass
class RecordedRequest:
    method: str
    path: str
    query: dict[str, str]
    body: Any
    authenticated: bool


@dataclass
class SubscriptionEntry:
    timestamp: int
    device: str
    op: str  # "add" or "remove"
    url: str


@dataclass
class FakeServer:
    """Just enough of gpodder.net to exercise the sync engines.

    * The clock ticks once per accepted upload.
    * Subscription changes are logged account-wide; a device downloading
      changes only sees what other devices did since its ``since``.
    * Episode actions are returned by the time they were received, not by
      the timestamp the client put on them.
    """

    username: str = USERNAME
    password: str = PASSWORD
    clock: int = 1000
    subscription_log: list[SubscriptionEntry] = field(default_factory=list)
    episode_log: list[tuple[int, dict[str, Any]]] = field(default_factory=list)
    devices: dict[str, dict[str, Any]] = field(default_factory=dict)
    settings: dict[str, dict[str, Any]] = field(default_factory=dict)
    favorites: list[dict[str, Any]] = field(default_factory=list)
    rewrites: dict[str, str] = field(default_factory=dict)
    omit_episode_cursor: bool = False
    requests: list[RecordedRequest] = field(default_factory=list)
    failures: list[tuple[str, str, int | None]] = field(default_factory=list)
    logged_in: bool = False

    # -- test controls -------------------------------------------------------

    def fail_next(self, method: str, path_fragment: str, status: int | None = 503) -> None:
        """Fail the next matching request. ``status=None`` simulates a network error."""
        self.failures.append((method, path_fragment, status))

    def requests_to(self, method: str, path_fragment: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.method == method and path_fragment in r.path]

    def tick(self) -> int:
        self.clock += 1
        return self.clock

    # -- Transport interface -------------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        auth: GpodderAuth | None,
        body: Any = None,
        query: dict[str, str] | None = None,
    ) -> TransportResponse:
        query = dict(query or {})
        # go through JSON like the real wire does
        body = json.loads(json.dumps(body)) if body is not None else None
        self.requests.append(RecordedRequest(method, path, query, body, auth is not None))

        for i, (fail_method, fragment, status) in enumerate(self.failures):
            if fail_method == method and fragment in path:
                del self.failures[i]
                if status is None:
                    raise TransportError("Request failed: connection reset")
                return TransportResponse(status, "Service Unavailable")

        for pattern, handler_method, handler in self._routes():
            match = re.fullmatch(pattern, path)
            if match and handler_method == method:
                args = [unquote(group) for group in match.groups()]
                if path.startswith(("/api/2/auth", "/api/2/devices", "/api/2/subscriptions",
                                    "/api/2/episodes", "/api/2/settings", "/api/2/favorites",
                                    "/subscriptions", "/suggestions")):
                    if auth is None or auth.username != self.username or auth.password != self.password:
                        return TransportResponse(401, "Unauthorized")
                    if args and args[0] != self.username:
                        return TransportResponse(403, "Forbidden")
                status, data = handler(*args, query=query, body=body)
                text = "" if data is None else json.dumps(data)
                return TransportResponse(status, text)

        return TransportResponse(404, "Not Found")

    def _routes(self) -> list[tuple[str, str, Any]]:
        return [
            (r"/api/2/auth/([^/]+)/login\.json", "POST", self._login),
            (r"/api/2/auth/([^/]+)/logout\.json", "POST", self._logout),
            (r"/api/2/devices/([^/]+)\.json", "GET", self._list_devices),
            (r"/api/2/devices/([^/]+)/([^/]+)\.json", "POST", self._update_device),
            (r"/subscriptions/([^/]+)\.json", "GET", self._all_subscriptions),
            (r"/subscriptions/([^/]+)/([^/]+)\.json", "GET", self._device_subscriptions),
            (r"/subscriptions/([^/]+)/([^/]+)\.json", "PUT", self._put_device_subscriptions),
            (r"/api/2/subscriptions/([^/]+)/([^/]+)\.json", "POST", self._upload_subscriptions),
            (r"/api/2/subscriptions/([^/]+)/([^/]+)\.json", "GET", self._subscription_changes),
            (r"/api/2/episodes/([^/]+)\.json", "POST", self._upload_actions),
            (r"/api/2/episodes/([^/]+)\.json", "GET", self._episode_actions),
            (r"/api/2/settings/([^/]+)/([^/]+)\.json", "GET", self._get_settings),
            (r"/api/2/settings/([^/]+)/([^/]+)\.json", "POST", self._save_settings),
            (r"/api/2/favorites/([^/]+)\.json", "GET", self._favorites),
        ]

    # -- handlers ------------------------------------------------------------

    def _login(self, user: str, query: dict, body: Any) -> tuple[int, Any]:
        self.logged_in = True
        return 200, None

    def _logout(self, user: str, query: dict, body: Any) -> tuple[int, Any]:
        self.logged_in = False
        return 200, None

    def _list_devices(self, user: str, query: dict, body: Any) -> tuple[int, Any]:
        devices = []
        for device_id, info in sorted(self.devices.items()):
            devices.append({
                "id": device_id,
                "caption": info.get("caption", ""),
                "type": info.get("type", "other"),
                "subscriptions": len(self.current_subscriptions(device_id)),
            })
        return 200, devices

    def _update_device(self, user: str, device: str, query: dict, body: Any) -> tuple[int, Any]:
        self.devices.setdefault(device, {}).update(body or {})
        return 200, None

    def current_subscriptions(self, device: str | None = None) -> set[str]:
        """Replay the log for one device, or for the whole account."""
        subscriptions: set[str] = set()
        for entry in self.subscription_log:
            if device is not None and entry.device != device:
                continue
            if entry.op == "add":
                subscriptions.add(entry.url)
            else:
                subscriptions.discard(entry.url)
        return subscriptions

    def _all_subscriptions(self, user: str, query: dict, body: Any) -> tuple[int, Any]:
        return 200, [{"url": url, "title": url.rsplit("/", 1)[-1]} for url in sorted(self.current_subscriptions())]

    def _device_subscriptions(self, user: str, device: str, query: dict, body: Any) -> tuple[int, Any]:
        return 200, sorted(self.current_subscriptions(device))

    def _put_device_subscriptions(self, user: str, device: str, query: dict, body: Any) -> tuple[int, Any]:
        current = self.current_subscriptions(device)
        wanted = set(body)
        timestamp = self.tick()
        self.devices.setdefault(device, {})
        for url in sorted(wanted - current):
            self.subscription_log.append(SubscriptionEntry(timestamp, device, "add", url))
        for url in sorted(current - wanted):
            self.subscription_log.append(SubscriptionEntry(timestamp, device, "remove", url))
        return 200, None

    def _upload_subscriptions(self, user: str, device: str, query: dict, body: Any) -> tuple[int, Any]:
        if set(body["add"]) & set(body["remove"]):
            return 400, {"error": "add and remove overlap"}
        timestamp = self.tick()
        self.devices.setdefault(device, {})
        update_urls = []
        for op in ("add", "remove"):
            for url in body[op]:
                new_url = self.rewrites.get(url, url)
                if new_url != url:
                    update_urls.append([url, new_url])
                if new_url:
                    self.subscription_log.append(SubscriptionEntry(timestamp, device, op, new_url))
        return 200, {"timestamp": timestamp, "update_urls": update_urls}

    def _subscription_changes(self, user: str, device: str, query: dict, body: Any) -> tuple[int, Any]:
        since = int(query.get("since", 0))
        latest: dict[str, str] = {}
        for entry in self.subscription_log:
            if entry.timestamp > since and entry.device != device:
                latest[entry.url] = entry.op
        return 200, {
            "add": sorted(url for url, op in latest.items() if op == "add"),
            "remove": sorted(url for url, op in latest.items() if op == "remove"),
            "timestamp": self.clock,
        }

    def _upload_actions(self, user: str, query: dict, body: Any) -> tuple[int, Any]:
        timestamp = self.tick()
        update_urls = []
        for action in body:
            for name in ("podcast", "episode"):
                new_url = self.rewrites.get(action[name])
                if new_url is not None:
                    update_urls.append([action[name], new_url])
                    action[name] = new_url
            self.episode_log.append((timestamp, action))
        return 200, {"timestamp": timestamp, "update_urls": update_urls}

    def _episode_actions(self, user: str, query: dict, body: Any) -> tuple[int, Any]:
        since = int(query.get("since", 0))
        actions = [action for received, action in self.episode_log if received > since]
        if "podcast" in query:
            actions = [action for action in actions if action["podcast"] == query["podcast"]]
        if "device" in query:
            actions = [action for action in actions if action.get("device") == query["device"]]
        if query.get("aggregated") == "true":
            latest: dict[str, dict[str, Any]] = {}
            for action in actions:
                latest[action["episode"]] = action
            actions = list(latest.values())

        data: dict[str, Any] = {"actions": actions}
        if not self.omit_episode_cursor:
            data["timestamp"] = self.clock
        return 200, data

    def _settings_key(self, scope: str, query: dict) -> str:
        return "|".join([scope, query.get("device", ""), query.get("podcast", ""), query.get("episode", "")])

    def _get_settings(self, user: str, scope: str, query: dict, body: Any) -> tuple[int, Any]:
        return 200, self.settings.get(self._settings_key(scope, query), {})

    def _save_settings(self, user: str, scope: str, query: dict, body: Any) -> tuple[int, Any]:
        stored = self.settings.setdefault(self._settings_key(scope, query), {})
        stored.update(body.get("set", {}))
        for key in body.get("remove", []):
            stored.pop(key, None)
        return 200, stored

    def _favorites(self, user: str, query: dict, body: Any) -> tuple[int, Any]:
        return 200, self.favorites


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


def make_ops(server: FakeServer, device_id: str, state: SyncState | None = None, **kwargs: Any) -> SyncOperations:
    """Build SyncOperations for one device against the fake server."""
    credentials = Credentials(username=USERNAME, password=PASSWORD, device_id=device_id)
    return SyncOperations(
        credentials,
        config=kwargs.pop("config", ClientConfig()),
        state=state or SyncState(),
        transport=server,
        **kwargs,
    )


@pytest.fixture
def laptop(server: FakeServer) -> SyncOperations:
    return make_ops(server, "laptop")


@pytest.fixture
def phone(server: FakeServer) -> SyncOperations:
    return make_ops(server, "phone")


@pytest.fixture
def make_device(server: FakeServer) -> Any:
    def factory(device_id: str, state: SyncState | None = None, **kwargs: Any) -> SyncOperations:
        return make_ops(server, device_id, state, **kwargs)

    return factory
