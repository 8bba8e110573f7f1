"""Public operations of the gpodder.net sync client."""

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from ..models.config import ClientConfig, Credentials
from ..models.records import (
    Checkpoint,
    Device,
    DeviceType,
    Episode,
    EpisodeAction,
    EpisodeActionFilter,
    Podcast,
    ResourceClass,
    SettingsScope,
    SubscriptionChange,
    SyncResult,
    Tag,
    validate_url,
)
from .auth import GpodderAuth
from .client import GpodderClient
from .episodes import EpisodeActionSyncEngine
from .state import SyncState
from .subscriptions import ConflictPolicy, SubscriptionSyncEngine, server_wins
from .transport import RequestsTransport, Transport

logger = logging.getLogger(__name__)


class SyncOperations:
    """One device's view of a gpodder.net account.

    Local subscription changes and episode actions are buffered in the
    state store until the next sync. A sync either succeeds completely
    (checkpoint advanced, confirmed changes retired from the buffer) or
    fails with nothing written, so any failed call can simply be retried.

    Example:
        ops = SyncOperations(Credentials.from_env())
        ops.subscribe("https://example.com/feed.xml")
        result = ops.sync_subscriptions(local_subscriptions=my_feeds)
        my_feeds = result.state
    """

    def __init__(
        self,
        credentials: Credentials,
        config: ClientConfig | None = None,
        state: SyncState | None = None,
        transport: Transport | None = None,
        conflict_policy: ConflictPolicy = server_wins,
        base_dir: Path | None = None,
    ) -> None:
        """Initialize sync operations.

        Args:
            credentials: Account credentials and device id
            config: Client settings (defaults if not provided)
            state: Checkpoint store (file from config if not provided)
            transport: HTTP transport (RequestsTransport if not provided)
            conflict_policy: How to resolve subscription conflicts
            base_dir: Directory a relative state file is resolved against
        """
        self.config = config or ClientConfig(base_url=credentials.base_url)
        self.account = credentials.username
        self.device_id = credentials.device_id

        # only a transport we created is ours to close
        self._http: RequestsTransport | None = None
        if transport is None:
            transport = self._http = RequestsTransport(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                user_agent=self.config.user_agent,
            )
        self.transport = transport
        self.client = GpodderClient(
            GpodderAuth(credentials.username, credentials.password),
            self.transport,
        )
        self.state = state or SyncState(self.config.state_path(base_dir))

        self.subscriptions = SubscriptionSyncEngine(
            self.client, self.state, self.account, conflict_policy
        )
        self.episodes = EpisodeActionSyncEngine(self.client, self.state, self.account)

    # =========================================================================
    # Session
    # =========================================================================

    def login(self) -> None:
        self.client.login()

    def logout(self) -> None:
        self.client.logout()

    def close(self) -> None:
        """Close the HTTP session this object opened, if any."""
        if self._http is not None:
            self._http.close()

    def __enter__(self) -> "SyncOperations":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def checkpoint(self, resource_class: ResourceClass) -> Checkpoint | None:
        """Current checkpoint of this device for a resource class."""
        return self.state.get(self.account, self.device_id, resource_class)

    def reset_checkpoint(self, resource_class: ResourceClass) -> None:
        """Make the next sync of ``resource_class`` a full resync."""
        logger.info(f"Resetting {ResourceClass(resource_class).value} checkpoint for {self.device_id}")
        self.state.reset(self.account, self.device_id, resource_class)

    # =========================================================================
    # Directory and suggestions
    # =========================================================================

    def search_podcasts(self, query: str, scale_logo: int | None = None) -> list[Podcast]:
        return self.client.search_podcasts(query, scale_logo)

    def podcast_toplist(self, count: int, scale_logo: int | None = None) -> list[Podcast]:
        return self.client.get_toplist(count, scale_logo)

    def top_tags(self, count: int) -> list[Tag]:
        return self.client.get_top_tags(count)

    def podcasts_for_tag(self, tag: str, count: int) -> list[Podcast]:
        return self.client.get_podcasts_for_tag(tag, count)

    def podcast_data(self, url: str) -> Podcast:
        return self.client.get_podcast_data(url)

    def episode_data(self, podcast: str, url: str) -> Episode:
        return self.client.get_episode_data(podcast, url)

    def suggestions(self, max_results: int = 10) -> list[Podcast]:
        return self.client.get_suggestions(max_results)

    # =========================================================================
    # Devices
    # =========================================================================

    def list_devices(self) -> list[Device]:
        return self.client.list_devices()

    def update_device(
        self,
        caption: str | None = None,
        device_type: DeviceType | None = None,
    ) -> None:
        """Register this device or update its caption and type."""
        self.client.update_device(self.device_id, caption, device_type)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, url: str) -> None:
        """Buffer a subscription until the next sync."""
        self.state.add_pending_subscription(self.account, self.device_id, validate_url(url))

    def unsubscribe(self, url: str) -> None:
        """Buffer an unsubscription until the next sync."""
        self.state.add_pending_unsubscription(self.account, self.device_id, validate_url(url))

    def pending_subscription_changes(self) -> SubscriptionChange:
        return self.state.pending_subscription_changes(self.account, self.device_id)

    def sync_subscriptions(
        self,
        local_subscriptions: Iterable[str] | None = None,
    ) -> SyncResult[SubscriptionChange]:
        """Upload buffered subscription changes and fetch remote ones.

        Args:
            local_subscriptions: Current local subscription set to merge into

        Returns:
            SyncResult; ``state`` holds the merged set if one was given
        """
        checkpoint = self.state.get(self.account, self.device_id, ResourceClass.SUBSCRIPTIONS)
        pending = self.state.pending_subscription_changes(self.account, self.device_id)

        result = self.subscriptions.sync(
            self.device_id,
            pending.added,
            pending.removed,
            checkpoint,
            local_subscriptions=local_subscriptions,
        )
        self.state.retire_subscription_changes(self.account, self.device_id, result.confirmed)
        return result

    def all_subscriptions(self) -> list[Podcast]:
        """Subscriptions of every device of the account."""
        return self.client.get_all_subscriptions()

    def device_subscriptions(self) -> list[str]:
        """Full subscription list of this device as the server sees it."""
        return self.client.get_device_subscriptions(self.device_id)

    def replace_device_subscriptions(self, urls: Iterable[str]) -> None:
        """Overwrite this device's subscription list on the server."""
        self.client.put_device_subscriptions(self.device_id, [validate_url(url) for url in urls])

    # =========================================================================
    # Episode actions
    # =========================================================================

    def record_action(self, action: EpisodeAction) -> None:
        """Buffer an episode action until the next sync."""
        self.state.add_pending_actions(
            self.account, self.device_id, [action.for_device(self.device_id).validate()]
        )

    def pending_actions(self) -> list[EpisodeAction]:
        return self.state.pending_actions(self.account, self.device_id)

    def sync_episode_actions(
        self,
        since_filter: EpisodeActionFilter | None = None,
        local_log: Iterable[EpisodeAction] | None = None,
    ) -> SyncResult[list[EpisodeAction]]:
        """Upload buffered episode actions and fetch everyone else's.

        Args:
            since_filter: Optional slice of the stream to download
            local_log: Actions already stored locally, to be merged

        Returns:
            SyncResult; ``state`` holds the merged log if one was given
        """
        if since_filter is None and self.config.aggregated_actions:
            since_filter = EpisodeActionFilter(aggregated=True)

        log = list(local_log) if local_log is not None else None
        checkpoint = self.state.get(self.account, self.device_id, ResourceClass.EPISODE_ACTIONS)
        pending = self.state.pending_actions(self.account, self.device_id)

        result = self.episodes.sync(
            self.device_id,
            pending,
            checkpoint,
            since_filter=since_filter,
            local_log=log,
        )
        self.state.retire_actions(self.account, self.device_id, result.confirmed)
        # already known actions were skipped, not uploaded; they are done too
        if log:
            self.state.retire_actions(self.account, self.device_id, log)
        return result

    def episode_actions(
        self,
        since_filter: EpisodeActionFilter | None = None,
        since: int | None = None,
    ) -> list[EpisodeAction]:
        """Download episode actions without touching checkpoints or the buffer."""
        since_filter = since_filter or EpisodeActionFilter()
        response = self.client.get_episode_actions(
            since=since,
            podcast=since_filter.podcast,
            device_id=since_filter.device,
            aggregated=since_filter.aggregated,
        )
        matching = [action for action in response.actions if since_filter.matches(action)]
        return sorted(matching, key=lambda action: action.timestamp)

    # =========================================================================
    # Settings and favorites
    # =========================================================================

    def get_settings(
        self,
        scope: SettingsScope,
        podcast: str | None = None,
        episode: str | None = None,
    ) -> dict[str, Any]:
        return self.client.get_settings(scope, self.device_id, podcast, episode)

    def save_settings(
        self,
        scope: SettingsScope,
        set_values: dict[str, Any] | None = None,
        remove: list[str] | None = None,
        podcast: str | None = None,
        episode: str | None = None,
    ) -> dict[str, Any]:
        return self.client.save_settings(scope, set_values, remove, self.device_id, podcast, episode)

    def favorite_episodes(self) -> list[Episode]:
        return self.client.get_favorite_episodes()
