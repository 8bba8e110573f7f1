"""Incremental episode action sync against gpodder.net."""

import dataclasses
import logging
from collections.abc import Iterable

from ..errors import CheckpointConflict, GpodderError
from ..models.records import (
    Checkpoint,
    EpisodeAction,
    EpisodeActionFilter,
    ResourceClass,
    SyncResult,
    checkpoint_since,
)
from .client import GpodderClient
from .state import SyncState

logger = logging.getLogger(__name__)


def merge_actions(log: Iterable[EpisodeAction], new: Iterable[EpisodeAction]) -> list[EpisodeAction]:
    """Append ``new`` to ``log`` and order by timestamp.

    The sort is stable, so actions with equal timestamps keep the order in
    which they were received. The first occurrence of a dedupe key wins.
    """
    seen = set()
    merged = []
    for action in [*log, *new]:
        if action.key in seen:
            continue
        seen.add(action.key)
        merged.append(action)
    merged.sort(key=lambda action: action.timestamp)
    return merged


def _rewrite_action(action: EpisodeAction, rewrites: dict[str, str]) -> EpisodeAction:
    podcast = rewrites.get(action.podcast) or action.podcast
    episode = rewrites.get(action.episode) or action.episode
    if podcast == action.podcast and episode == action.episode:
        return action
    return dataclasses.replace(action, podcast=podcast, episode=episode)


class EpisodeActionSyncEngine:
    """Uploads local episode actions and downloads everyone else's.

    Episode actions are an append-only log: every distinct action from every
    device is kept and there is nothing to resolve. Downloaded actions are
    returned in ascending timestamp order, keeping server order for equal
    timestamps. The new checkpoint is the cursor the server sends; only when
    the server sends none does the engine fall back to the newest action
    timestamp in the batch.

    A filtered sync only sees a slice of the stream, so it uploads and
    downloads but never moves the stored checkpoint. An aggregated sync
    without other filters covers every episode and advances it as usual.
    """

    resource_class = ResourceClass.EPISODE_ACTIONS

    def __init__(
        self,
        client: GpodderClient,
        state: SyncState,
        account: str | None = None,
    ) -> None:
        self.client = client
        self.state = state
        self.account = account or (client.auth.username if client.auth else "")

    def sync(
        self,
        device_id: str,
        local_actions: Iterable[EpisodeAction],
        checkpoint: Checkpoint | None,
        since_filter: EpisodeActionFilter | None = None,
        local_log: Iterable[EpisodeAction] | None = None,
    ) -> SyncResult[list[EpisodeAction]]:
        """Run one sync cycle for a device.

        Args:
            device_id: Device the local actions were recorded on
            local_actions: Actions to upload, in the order they happened
            checkpoint: Last merged server cursor (None = full resync)
            since_filter: Optional slice of the stream to download
            local_log: Actions already stored locally; never re-uploaded

        Returns:
            SyncResult whose ``applied`` actions must be appended locally

        Raises:
            ValidationError: A local action is malformed (nothing was sent)
            TransportError: Network failure; retry later
            CheckpointConflict: Checkpoint is stale; re-read it and retry
        """
        log = list(local_log) if local_log is not None else None
        batch = self._prepare_upload(device_id, local_actions, log or [])
        since_filter = since_filter or EpisodeActionFilter()

        with self.state.lock(self.account, device_id, self.resource_class):
            try:
                result = self._sync_locked(device_id, batch, checkpoint, since_filter, log)
            except GpodderError as e:
                logger.warning(f"Episode action sync for {device_id} failed at checkpoint {checkpoint}: {e}")
                e.attach_context(self.resource_class.value, device_id, checkpoint)
                raise

        logger.info(
            f"Episode action sync for {device_id} complete: {len(result.confirmed)} uploaded, "
            f"{len(result.applied)} applied, checkpoint {checkpoint} -> {result.checkpoint}"
        )
        return result

    def _prepare_upload(
        self,
        device_id: str,
        actions: Iterable[EpisodeAction],
        log: list[EpisodeAction],
    ) -> list[EpisodeAction]:
        """Validate, stamp with the device and drop anything already known."""
        known = {action.key for action in log}
        batch = []
        for action in actions:
            action = action.for_device(device_id).validate()
            if action.key in known:
                logger.debug(f"Skipping already known action {action.key}")
                continue
            known.add(action.key)
            batch.append(action)
        return batch

    def _sync_locked(
        self,
        device_id: str,
        batch: list[EpisodeAction],
        checkpoint: Checkpoint | None,
        since_filter: EpisodeActionFilter,
        log: list[EpisodeAction] | None,
    ) -> SyncResult[list[EpisodeAction]]:
        rewrites: dict[str, str] = {}
        if batch:
            upload = self.client.upload_episode_actions(batch)
            rewrites = upload.update_urls

        response = self.client.get_episode_actions(
            since=checkpoint_since(checkpoint),
            podcast=since_filter.podcast,
            device_id=since_filter.device,
            aggregated=since_filter.aggregated,
        )
        downloaded = sorted(
            (action for action in response.actions if since_filter.matches(action)),
            key=lambda action: action.timestamp,
        )

        echoes = {action.key for action in batch}
        echoes.update(_rewrite_action(action, rewrites).key for action in batch)
        known = {action.key for action in log or []}
        seen = set()
        applied = []
        for action in downloaded:
            if action.key in seen:
                continue
            seen.add(action.key)
            if action.key in echoes or action.key in known:
                continue
            applied.append(action)

        new_checkpoint: Checkpoint | None = checkpoint
        if not since_filter.narrows:
            new_checkpoint = self._next_checkpoint(checkpoint, response.timestamp, response.actions)
            self.state.compare_and_set(
                self.account, device_id, self.resource_class, checkpoint, new_checkpoint
            )

        return SyncResult(
            resource_class=self.resource_class,
            device_id=device_id,
            previous_checkpoint=checkpoint,
            checkpoint=new_checkpoint,
            applied=applied,
            confirmed=batch,
            url_rewrites=dict(rewrites),
            state=merge_actions(log, applied) if log is not None else None,
        )

    @staticmethod
    def _next_checkpoint(
        checkpoint: Checkpoint | None,
        server_cursor: int | None,
        actions: list[EpisodeAction],
    ) -> Checkpoint:
        if server_cursor is not None:
            new_checkpoint = Checkpoint(server_cursor)
            if checkpoint is not None and new_checkpoint < checkpoint:
                raise CheckpointConflict(
                    f"Server cursor {new_checkpoint} is older than checkpoint {checkpoint}"
                )
            return new_checkpoint

        # action timestamps come from clients, so only ever move forward
        candidates = [action.timestamp for action in actions]
        if checkpoint is not None:
            candidates.append(checkpoint.cursor)
        return Checkpoint(max(candidates, default=0))
