"""Checkpoint store and pending-change outbox."""

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import CheckpointConflict
from ..models.records import (
    Checkpoint,
    EpisodeAction,
    ResourceClass,
    SubscriptionChange,
)
from . import codec

logger = logging.getLogger(__name__)


@dataclass
class CheckpointRecord:
    """Persisted cursor for one (account, device, resource class)."""

    cursor: int
    updated_at: str  # ISO timestamp of the sync that stored it

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"cursor": self.cursor, "updated_at": self.updated_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckpointRecord":
        """Create from dictionary."""
        return cls(cursor=int(data["cursor"]), updated_at=data.get("updated_at", ""))


@dataclass
class PendingChanges:
    """Local changes of one device not yet confirmed by the server."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    actions: list[EpisodeAction] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed and not self.actions

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "add": list(self.added),
            "remove": list(self.removed),
            "actions": codec.encode_episode_actions(self.actions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingChanges":
        """Create from dictionary."""
        return cls(
            added=list(data.get("add") or []),
            removed=list(data.get("remove") or []),
            actions=codec.decode_episode_actions(data.get("actions") or [], "$.actions"),
        )


@dataclass
class SyncStateData:
    """Complete persisted state: checkpoints and pending changes."""

    version: str = "1.0"
    # account -> device -> resource class -> record
    checkpoints: dict[str, dict[str, dict[str, CheckpointRecord]]] = field(default_factory=dict)
    # account -> device -> pending changes
    pending: dict[str, dict[str, PendingChanges]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "version": self.version,
            "checkpoints": {
                account: {
                    device: {resource: record.to_dict() for resource, record in resources.items()}
                    for device, resources in devices.items()
                }
                for account, devices in self.checkpoints.items()
            },
            "pending": {
                account: {device: changes.to_dict() for device, changes in devices.items()}
                for account, devices in self.pending.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncStateData":
        """Create from dictionary."""
        checkpoints: dict[str, dict[str, dict[str, CheckpointRecord]]] = {}
        for account, devices in (data.get("checkpoints") or {}).items():
            checkpoints[account] = {
                device: {
                    resource: CheckpointRecord.from_dict(record)
                    for resource, record in resources.items()
                }
                for device, resources in devices.items()
            }

        pending: dict[str, dict[str, PendingChanges]] = {}
        for account, devices in (data.get("pending") or {}).items():
            pending[account] = {
                device: PendingChanges.from_dict(changes) for device, changes in devices.items()
            }

        return cls(
            version=data.get("version", "1.0"),
            checkpoints=checkpoints,
            pending=pending,
        )


class SyncState:
    """Tracks sync checkpoints and buffered local changes.

    Checkpoints are keyed by (account, device, resource class) and treated as
    opaque cursors; the only comparison made locally is the check that a
    cursor never moves backwards. With a ``state_file`` every mutation is
    written to disk atomically, so state survives process restarts. Without
    one the store lives in memory only.
    """

    def __init__(self, state_file: Path | str | None = None) -> None:
        """Initialize state manager.

        Args:
            state_file: Path to the JSON state file, or None for in-memory state
        """
        self.state_file = Path(state_file) if state_file is not None else None
        self._state: SyncStateData | None = None
        self._mutex = threading.RLock()
        self._key_locks: dict[tuple[str, str, str], threading.Lock] = {}

    @property
    def state(self) -> SyncStateData:
        """Get or load the state data."""
        with self._mutex:
            if self._state is None:
                self._state = self._load_state()
            return self._state

    def _load_state(self) -> SyncStateData:
        """Load state from disk or create empty."""
        if self.state_file is not None and self.state_file.exists():
            with open(self.state_file) as f:
                data = json.load(f)
            return SyncStateData.from_dict(data)
        return SyncStateData()

    def save(self) -> None:
        """Save state to disk, replacing the old file in one step."""
        if self.state_file is None:
            return
        with self._mutex:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.state_file.name}.", dir=self.state_file.parent
            )
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(self.state.to_dict(), f, indent=2)
                    f.write("\n")
                os.replace(tmp_path, self.state_file)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    def _resources(self, account: str, device: str) -> dict[str, CheckpointRecord]:
        return self.state.checkpoints.setdefault(account, {}).setdefault(device, {})

    def get(self, account: str, device: str, resource_class: ResourceClass) -> Checkpoint | None:
        """Get the stored checkpoint, or None if this key never synced."""
        with self._mutex:
            devices = self.state.checkpoints.get(account, {})
            record = devices.get(device, {}).get(ResourceClass(resource_class).value)
            return Checkpoint(record.cursor) if record is not None else None

    def _write(self, account: str, device: str, resource_class: ResourceClass, checkpoint: Checkpoint) -> None:
        self._resources(account, device)[ResourceClass(resource_class).value] = CheckpointRecord(
            cursor=checkpoint.cursor,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        self.save()

    def set(
        self,
        account: str,
        device: str,
        resource_class: ResourceClass,
        checkpoint: Checkpoint,
    ) -> None:
        """Store a checkpoint. Refuses to move a cursor backwards."""
        with self._mutex:
            current = self.get(account, device, resource_class)
            if current is not None and checkpoint < current:
                raise CheckpointConflict(
                    f"Checkpoint for {account}/{device}/{ResourceClass(resource_class).value} "
                    f"would regress from {current} to {checkpoint}"
                )
            self._write(account, device, resource_class, checkpoint)

    def compare_and_set(
        self,
        account: str,
        device: str,
        resource_class: ResourceClass,
        expected: Checkpoint | None,
        checkpoint: Checkpoint,
    ) -> None:
        """Advance a checkpoint only if it still equals ``expected``.

        Raises:
            CheckpointConflict: If another sync already moved the checkpoint,
                or if the new checkpoint is older than the expected one
        """
        resource = ResourceClass(resource_class).value
        with self._mutex:
            current = self.get(account, device, resource_class)
            if current != expected:
                raise CheckpointConflict(
                    f"Checkpoint for {account}/{device}/{resource} is stale: "
                    f"expected {expected}, found {current}"
                )
            if expected is not None and checkpoint < expected:
                raise CheckpointConflict(
                    f"Checkpoint for {account}/{device}/{resource} "
                    f"would regress from {expected} to {checkpoint}"
                )
            self._write(account, device, resource_class, checkpoint)
        logger.debug(f"Checkpoint {account}/{device}/{resource}: {expected} -> {checkpoint}")

    def reset(self, account: str, device: str, resource_class: ResourceClass) -> None:
        """Forget a checkpoint so the next sync starts from the beginning."""
        with self._mutex:
            self._resources(account, device).pop(ResourceClass(resource_class).value, None)
            self.save()

    @contextmanager
    def lock(self, account: str, device: str, resource_class: ResourceClass) -> Iterator[None]:
        """Hold the sync lock for one key.

        Only one sync may run per (account, device, resource class); other
        keys are not blocked.
        """
        key = (account, device, ResourceClass(resource_class).value)
        with self._mutex:
            key_lock = self._key_locks.setdefault(key, threading.Lock())
        with key_lock:
            yield

    # -------------------------------------------------------------------------
    # Pending outbox
    # -------------------------------------------------------------------------

    def _pending(self, account: str, device: str) -> PendingChanges:
        return self.state.pending.setdefault(account, {}).setdefault(device, PendingChanges())

    def add_pending_subscription(self, account: str, device: str, url: str) -> None:
        """Buffer a subscribe. Cancels a pending unsubscribe of the same URL."""
        with self._mutex:
            pending = self._pending(account, device)
            if url in pending.removed:
                pending.removed.remove(url)
            if url not in pending.added:
                pending.added.append(url)
            self.save()

    def add_pending_unsubscription(self, account: str, device: str, url: str) -> None:
        """Buffer an unsubscribe. Cancels a pending subscribe of the same URL."""
        with self._mutex:
            pending = self._pending(account, device)
            if url in pending.added:
                pending.added.remove(url)
            if url not in pending.removed:
                pending.removed.append(url)
            self.save()

    def pending_subscription_changes(self, account: str, device: str) -> SubscriptionChange:
        with self._mutex:
            pending = self._pending(account, device)
            return SubscriptionChange(added=frozenset(pending.added), removed=frozenset(pending.removed))

    def retire_subscription_changes(self, account: str, device: str, confirmed: SubscriptionChange) -> None:
        """Drop buffered changes the server confirmed.

        Changes recorded while the sync was running stay buffered.
        """
        with self._mutex:
            pending = self._pending(account, device)
            pending.added = [url for url in pending.added if url not in confirmed.added]
            pending.removed = [url for url in pending.removed if url not in confirmed.removed]
            self.save()

    def add_pending_actions(self, account: str, device: str, actions: Iterable[EpisodeAction]) -> None:
        with self._mutex:
            pending = self._pending(account, device)
            known = {action.key for action in pending.actions}
            for action in actions:
                if action.key not in known:
                    pending.actions.append(action)
                    known.add(action.key)
            self.save()

    def pending_actions(self, account: str, device: str) -> list[EpisodeAction]:
        with self._mutex:
            return list(self._pending(account, device).actions)

    def retire_actions(self, account: str, device: str, confirmed: Iterable[EpisodeAction]) -> None:
        """Drop buffered actions the server confirmed, matched by dedupe key."""
        confirmed_keys = {action.key for action in confirmed}
        with self._mutex:
            pending = self._pending(account, device)
            pending.actions = [
                action
                for action in pending.actions
                if action.for_device(device).key not in confirmed_keys
            ]
            self.save()

    def get_status_summary(self) -> dict[str, Any]:
        """Get a summary of sync state."""
        with self._mutex:
            return {
                "state_file": str(self.state_file) if self.state_file else None,
                "checkpoints": [
                    {
                        "account": account,
                        "device": device,
                        "resource_class": resource,
                        "cursor": record.cursor,
                        "updated_at": record.updated_at,
                    }
                    for account, devices in self.state.checkpoints.items()
                    for device, resources in devices.items()
                    for resource, record in resources.items()
                ],
                "pending": {
                    f"{account}/{device}": {
                        "add": len(changes.added),
                        "remove": len(changes.removed),
                        "actions": len(changes.actions),
                    }
                    for account, devices in self.state.pending.items()
                    for device, changes in devices.items()
                    if not changes.is_empty
                },
            }
