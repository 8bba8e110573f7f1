"""Incremental subscription sync against gpodder.net."""

import logging
from collections.abc import Callable, Iterable

from ..errors import CheckpointConflict, GpodderError
from ..models.records import (
    Checkpoint,
    ResourceClass,
    SubscriptionChange,
    SubscriptionConflict,
    SyncResult,
    checkpoint_since,
    validate_url,
)
from .client import GpodderClient
from .state import SyncState

logger = logging.getLogger(__name__)

ADD = "add"
REMOVE = "remove"

# (url, local operation, remote operation) -> winning operation
ConflictPolicy = Callable[[str, str, str], str]


def server_wins(url: str, local: str, remote: str) -> str:
    """The server is authoritative for global state."""
    return remote


def local_wins(url: str, local: str, remote: str) -> str:
    return local


def rewrite_urls(urls: Iterable[str], rewrites: dict[str, str]) -> set[str]:
    """Apply server URL rewrites. An empty new URL drops the old one."""
    result = set()
    for url in urls:
        new = rewrites.get(url, url)
        if new:
            result.add(new)
    return result


class SubscriptionSyncEngine:
    """Merges a device's local subscription delta with the server's.

    One call to :meth:`sync` uploads the local delta, downloads every change
    made elsewhere since the checkpoint, resolves conflicts with the
    configured policy and, only after both requests succeeded, advances the
    stored checkpoint. A failed call leaves the checkpoint untouched so the
    caller can retry with the same local delta.

    Conflicts are URLs that changed in opposite directions: removed locally
    but added on the server, or the reverse. The default policy lets the
    server win; every conflict is reported in ``SyncResult.conflicts``. When
    the policy overrules the local operation, the winning operation is
    uploaded for this device in the same cycle, before the checkpoint moves,
    so the server and the other devices end up with the resolved state.
    """

    resource_class = ResourceClass.SUBSCRIPTIONS

    def __init__(
        self,
        client: GpodderClient,
        state: SyncState,
        account: str | None = None,
        conflict_policy: ConflictPolicy = server_wins,
    ) -> None:
        self.client = client
        self.state = state
        self.account = account or (client.auth.username if client.auth else "")
        self.conflict_policy = conflict_policy

    def sync(
        self,
        device_id: str,
        local_added: Iterable[str],
        local_removed: Iterable[str],
        checkpoint: Checkpoint | None,
        local_subscriptions: Iterable[str] | None = None,
    ) -> SyncResult[SubscriptionChange]:
        """Run one sync cycle for a device.

        Args:
            device_id: Device whose subscriptions are synced
            local_added: URLs subscribed locally since the last sync
            local_removed: URLs unsubscribed locally since the last sync
            checkpoint: Checkpoint the local delta is based on (None = full resync)
            local_subscriptions: Current local subscription set, to be merged

        Returns:
            SyncResult whose ``applied`` delta must be applied locally

        Raises:
            ValidationError: Local delta is malformed (nothing was sent)
            TransportError: Network failure; retry later
            CheckpointConflict: Checkpoint is stale; re-read it and retry
        """
        local = SubscriptionChange(
            added=frozenset(validate_url(url) for url in local_added),
            removed=frozenset(validate_url(url) for url in local_removed),
        )

        with self.state.lock(self.account, device_id, self.resource_class):
            try:
                result = self._sync_locked(device_id, local, checkpoint, local_subscriptions)
            except GpodderError as e:
                logger.warning(f"Subscription sync for {device_id} failed at checkpoint {checkpoint}: {e}")
                e.attach_context(self.resource_class.value, device_id, checkpoint)
                raise

        logger.info(
            f"Subscription sync for {device_id} complete: "
            f"+{len(result.applied.added)} -{len(result.applied.removed)} applied, "
            f"checkpoint {checkpoint} -> {result.checkpoint}"
        )
        return result

    def _sync_locked(
        self,
        device_id: str,
        local: SubscriptionChange,
        checkpoint: Checkpoint | None,
        local_subscriptions: Iterable[str] | None,
    ) -> SyncResult[SubscriptionChange]:
        rewrites: dict[str, str] = {}
        confirmed = SubscriptionChange()

        if not local.is_empty:
            logger.debug(f"Uploading +{len(local.added)} -{len(local.removed)} for {device_id}")
            upload = self.client.upload_subscription_changes(device_id, local)
            rewrites = upload.update_urls
            confirmed = SubscriptionChange(local.added, local.removed, upload.timestamp)

        remote = self.client.get_subscription_changes(device_id, checkpoint_since(checkpoint))
        new_checkpoint = Checkpoint(remote.timestamp)
        if checkpoint is not None and new_checkpoint < checkpoint:
            raise CheckpointConflict(
                f"Server cursor {new_checkpoint} is older than checkpoint {checkpoint}"
            )

        sent = SubscriptionChange(
            added=frozenset(rewrite_urls(local.added, rewrites)),
            removed=frozenset(rewrite_urls(local.removed, rewrites)),
        )
        applied, conflicts = self._merge(sent, remote)

        # our losing op is already on the server; upload the winner over it
        overruled = [c for c in conflicts if c.resolution != c.local]
        restore = SubscriptionChange(
            added=frozenset(c.url for c in overruled if c.resolution == ADD),
            removed=frozenset(c.url for c in overruled if c.resolution == REMOVE),
        )
        if not restore.is_empty:
            logger.info(
                f"Restoring +{len(restore.added)} -{len(restore.removed)} for {device_id} after conflicts"
            )
            upload = self.client.upload_subscription_changes(device_id, restore)
            rewrites = {**rewrites, **upload.update_urls}

        merged = None
        if local_subscriptions is not None:
            merged = rewrite_urls(local_subscriptions, rewrites)
            merged = sent.apply_to(merged)
            merged = applied.apply_to(merged)

        self.state.compare_and_set(
            self.account, device_id, self.resource_class, checkpoint, new_checkpoint
        )

        return SyncResult(
            resource_class=self.resource_class,
            device_id=device_id,
            previous_checkpoint=checkpoint,
            checkpoint=new_checkpoint,
            applied=applied,
            confirmed=confirmed,
            conflicts=conflicts,
            url_rewrites=dict(rewrites),
            state=merged,
        )

    def _merge(
        self,
        local: SubscriptionChange,
        remote: SubscriptionChange,
    ) -> tuple[SubscriptionChange, list[SubscriptionConflict]]:
        """Work out which remote changes to apply locally.

        Remote entries matching our own upload are echoes and are skipped.
        """
        local_ops = {url: ADD for url in local.added}
        local_ops.update({url: REMOVE for url in local.removed})

        apply_add: set[str] = set()
        apply_remove: set[str] = set()
        conflicts: list[SubscriptionConflict] = []

        for remote_op, urls in ((ADD, remote.added), (REMOVE, remote.removed)):
            target = apply_add if remote_op == ADD else apply_remove
            for url in sorted(urls):
                local_op = local_ops.get(url)
                if local_op is None:
                    target.add(url)
                    continue
                if local_op == remote_op:
                    continue

                winner = self.conflict_policy(url, local_op, remote_op)
                if winner not in (ADD, REMOVE):
                    raise ValueError(f"Conflict policy returned {winner!r} for {url}")
                conflicts.append(
                    SubscriptionConflict(url=url, local=local_op, remote=remote_op, resolution=winner)
                )
                logger.warning(
                    f"Subscription conflict for {url}: local {local_op}, remote {remote_op}; "
                    f"keeping {winner}"
                )
                if winner == remote_op:
                    target.add(url)

        applied = SubscriptionChange(
            added=frozenset(apply_add),
            removed=frozenset(apply_remove),
            timestamp=remote.timestamp,
        )
        return applied, conflicts
