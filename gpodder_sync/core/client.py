"""HTTP client wrapper for the gpodder.net API."""

import json
import logging
from typing import Any
from urllib.parse import quote

from ..errors import (
    AuthError,
    CheckpointConflict,
    DecodeError,
    GpodderError,
    TransportError,
    ValidationError,
)
from ..models.records import (
    Device,
    DeviceType,
    Episode,
    EpisodeAction,
    Podcast,
    SettingsScope,
    SubscriptionChange,
    Tag,
)
from . import codec
from .auth import GpodderAuth
from .codec import EpisodeActionsResponse, UploadResponse
from .transport import RequestsTransport, Transport

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (408, 429)


def _segment(value: str) -> str:
    return quote(value, safe="")


class GpodderClient:
    """HTTP client for the gpodder.net REST API.

    Each endpoint method returns domain records decoded by the codec. Errors
    are raised from the taxonomy in ``gpodder_sync.errors``.
    """

    API_VERSION = "2"

    def __init__(
        self,
        auth: GpodderAuth | None = None,
        transport: Transport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            auth: Credentials; only public directory endpoints work without them
            transport: Transport to send requests with (RequestsTransport by default)
        """
        self.auth = auth
        self.transport = transport or RequestsTransport()

    @property
    def api(self) -> str:
        return f"/api/{self.API_VERSION}"

    @property
    def username(self) -> str:
        """Path segment for the authenticated user."""
        if self.auth is None:
            raise AuthError("This endpoint requires gpodder.net credentials")
        return self.auth.quoted_username

    def _request(
        self,
        method: str,
        path: str,
        query_params: dict[str, str] | None = None,
        json_data: Any = None,
        authenticated: bool = True,
    ) -> Any:
        """Make a request to the gpodder.net API.

        Args:
            method: HTTP method
            path: API path (without base URL)
            query_params: Optional query parameters
            json_data: Optional JSON body data
            authenticated: Whether to send credentials

        Returns:
            Parsed JSON response, or None for an empty body

        Raises:
            GpodderError: On API errors (see the error taxonomy)
        """
        auth = self.auth if authenticated else None
        response = self.transport.request(method, path, auth, body=json_data, query=query_params)
        status = response.status_code

        if status >= 400:
            error_msg = f"API error {status}: {response.text[:500]}"
            if status in (401, 403):
                raise AuthError(error_msg, status, response)
            if status in (409, 412):
                raise CheckpointConflict(error_msg, status, response)
            if status == 400:
                raise ValidationError(error_msg, status, response)
            if status >= 500 or status in RETRYABLE_STATUS_CODES:
                raise TransportError(error_msg, status, response)
            raise GpodderError(error_msg, status, response)

        # Handle empty responses
        if not response.text.strip():
            return None

        try:
            return json.loads(response.text)
        except ValueError as e:
            raise DecodeError(f"response is not valid JSON: {e}", response=response) from e

    def get(
        self,
        path: str,
        query_params: dict[str, str] | None = None,
        authenticated: bool = True,
    ) -> Any:
        """Make a GET request."""
        return self._request("GET", path, query_params, authenticated=authenticated)

    def post(
        self,
        path: str,
        json_data: Any = None,
        query_params: dict[str, str] | None = None,
    ) -> Any:
        """Make a POST request."""
        return self._request("POST", path, query_params, json_data)

    def put(self, path: str, json_data: Any = None) -> Any:
        """Make a PUT request."""
        return self._request("PUT", path, json_data=json_data)

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def login(self) -> None:
        """Start a cookie session. The transport keeps the ``sessionid`` cookie."""
        self.post(f"{self.api}/auth/{self.username}/login.json")
        logger.info(f"Logged in as {self.auth.username if self.auth else '?'}")

    def logout(self) -> None:
        self.post(f"{self.api}/auth/{self.username}/logout.json")

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    def list_devices(self) -> list[Device]:
        """List all devices registered under the account."""
        return codec.decode_devices(self.get(f"{self.api}/devices/{self.username}.json"))

    def update_device(
        self,
        device_id: str,
        caption: str | None = None,
        device_type: DeviceType | None = None,
    ) -> None:
        """Create a device or update its caption and type.

        Args:
            device_id: Device ID
            caption: New caption (unchanged if None)
            device_type: New device type (unchanged if None)
        """
        self.post(
            f"{self.api}/devices/{self.username}/{_segment(device_id)}.json",
            json_data=codec.encode_device_update(caption, device_type),
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def get_all_subscriptions(self) -> list[Podcast]:
        """Get the subscriptions of all devices of the account."""
        return codec.decode_podcasts(self.get(f"/subscriptions/{self.username}.json"))

    def get_device_subscriptions(self, device_id: str) -> list[str]:
        """Get the full subscription list of one device (simple API)."""
        data = self.get(f"/subscriptions/{self.username}/{_segment(device_id)}.json")
        return codec.decode_url_list(data)

    def put_device_subscriptions(self, device_id: str, urls: list[str]) -> None:
        """Replace the full subscription list of one device (simple API)."""
        self.put(f"/subscriptions/{self.username}/{_segment(device_id)}.json", json_data=list(urls))

    def upload_subscription_changes(self, device_id: str, change: SubscriptionChange) -> UploadResponse:
        """Upload added and removed podcast URLs for a device."""
        data = self.post(
            f"{self.api}/subscriptions/{self.username}/{_segment(device_id)}.json",
            json_data=codec.encode_subscription_delta(change),
        )
        return codec.decode_upload_response(data)

    def get_subscription_changes(self, device_id: str, since: int) -> SubscriptionChange:
        """Get subscription changes of a device since a server timestamp."""
        data = self.get(
            f"{self.api}/subscriptions/{self.username}/{_segment(device_id)}.json",
            {"since": str(since)},
        )
        return codec.decode_subscription_changes(data)

    # -------------------------------------------------------------------------
    # Episode actions
    # -------------------------------------------------------------------------

    def upload_episode_actions(self, actions: list[EpisodeAction]) -> UploadResponse:
        """Upload episode actions in order."""
        data = self.post(
            f"{self.api}/episodes/{self.username}.json",
            json_data=codec.encode_episode_actions(actions),
        )
        return codec.decode_upload_response(data)

    def get_episode_actions(
        self,
        since: int | None = None,
        podcast: str | None = None,
        device_id: str | None = None,
        aggregated: bool = False,
    ) -> EpisodeActionsResponse:
        """Download episode actions.

        Args:
            since: Only actions uploaded after this server timestamp
            podcast: Only actions for this podcast URL
            device_id: Only actions from this device
            aggregated: Only the latest action per episode

        Returns:
            Decoded actions in server order and the server cursor
        """
        query_params = {"aggregated": "true" if aggregated else "false"}
        if since is not None:
            query_params["since"] = str(since)
        if podcast:
            query_params["podcast"] = podcast
        if device_id:
            query_params["device"] = device_id

        data = self.get(f"{self.api}/episodes/{self.username}.json", query_params)
        return codec.decode_episode_actions_response(data)

    # -------------------------------------------------------------------------
    # Settings and favorites
    # -------------------------------------------------------------------------

    def _settings_params(
        self,
        scope: SettingsScope,
        device_id: str | None,
        podcast: str | None,
        episode: str | None,
    ) -> dict[str, str]:
        query_params: dict[str, str] = {}
        if scope is SettingsScope.DEVICE:
            if not device_id:
                raise ValidationError("device settings require a device id")
            query_params["device"] = device_id
        if scope in (SettingsScope.PODCAST, SettingsScope.EPISODE):
            if not podcast:
                raise ValidationError(f"{scope.value} settings require a podcast URL")
            query_params["podcast"] = podcast
        if scope is SettingsScope.EPISODE:
            if not episode:
                raise ValidationError("episode settings require an episode URL")
            query_params["episode"] = episode
        return query_params

    def get_settings(
        self,
        scope: SettingsScope,
        device_id: str | None = None,
        podcast: str | None = None,
        episode: str | None = None,
    ) -> dict[str, Any]:
        """Get the settings stored for a scope."""
        scope = SettingsScope(scope)
        query_params = self._settings_params(scope, device_id, podcast, episode)
        data = self.get(f"{self.api}/settings/{self.username}/{scope.value}.json", query_params)
        return codec.decode_settings(data)

    def save_settings(
        self,
        scope: SettingsScope,
        set_values: dict[str, Any] | None = None,
        remove: list[str] | None = None,
        device_id: str | None = None,
        podcast: str | None = None,
        episode: str | None = None,
    ) -> dict[str, Any]:
        """Set and remove settings for a scope. Returns the resulting settings."""
        scope = SettingsScope(scope)
        query_params = self._settings_params(scope, device_id, podcast, episode)
        data = self.post(
            f"{self.api}/settings/{self.username}/{scope.value}.json",
            json_data=codec.encode_settings_update(set_values, remove),
            query_params=query_params,
        )
        return codec.decode_settings(data)

    def get_favorite_episodes(self) -> list[Episode]:
        return codec.decode_episodes(self.get(f"{self.api}/favorites/{self.username}.json"))

    def get_suggestions(self, max_results: int) -> list[Podcast]:
        """Podcasts the server suggests based on the account's subscriptions."""
        return codec.decode_podcasts(self.get(f"/suggestions/{int(max_results)}.json"))

    # -------------------------------------------------------------------------
    # Directory (public)
    # -------------------------------------------------------------------------

    def get_top_tags(self, count: int) -> list[Tag]:
        data = self.get(f"{self.api}/tags/{int(count)}.json", authenticated=False)
        return codec.decode_tags(data)

    def get_podcasts_for_tag(self, tag: str, count: int) -> list[Podcast]:
        data = self.get(f"{self.api}/tag/{_segment(tag)}/{int(count)}.json", authenticated=False)
        return codec.decode_podcasts(data)

    def get_podcast_data(self, url: str) -> Podcast:
        data = self.get(f"{self.api}/data/podcast.json", {"url": url}, authenticated=False)
        return codec.decode_podcast(data)

    def get_episode_data(self, podcast: str, url: str) -> Episode:
        data = self.get(
            f"{self.api}/data/episode.json",
            {"podcast": podcast, "url": url},
            authenticated=False,
        )
        return codec.decode_episode(data)

    def get_toplist(self, count: int, scale_logo: int | None = None) -> list[Podcast]:
        query_params = {"scale_logo": str(scale_logo)} if scale_logo else None
        data = self.get(f"/toplist/{int(count)}.json", query_params, authenticated=False)
        return codec.decode_podcasts(data)

    def search_podcasts(self, query: str, scale_logo: int | None = None) -> list[Podcast]:
        query_params = {"q": query}
        if scale_logo:
            query_params["scale_logo"] = str(scale_logo)
        data = self.get("/search.json", query_params, authenticated=False)
        return codec.decode_podcasts(data)

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    def verify_connection(self) -> bool:
        """Verify API connectivity and authentication.

        Returns:
            True if connection successful

        Raises:
            GpodderError: On connection or auth failure
        """
        self.list_devices()
        return True
