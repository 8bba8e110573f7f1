"""Tests for the subscription sync engine."""

from unittest.mock import MagicMock

import pytest

from gpodder_sync.core.auth import GpodderAuth
from gpodder_sync.core.client import GpodderClient
from gpodder_sync.core.codec import UploadResponse
from gpodder_sync.core.state import SyncState
from gpodder_sync.core.subscriptions import SubscriptionSyncEngine, local_wins, rewrite_urls
from gpodder_sync.errors import CheckpointConflict, TransportError, ValidationError
from gpodder_sync.models.records import Checkpoint, ResourceClass, SubscriptionChange
from tests.conftest import FEED_A, FEED_B, FEED_C, PASSWORD, USERNAME, FakeServer

SUBS = ResourceClass.SUBSCRIPTIONS


def make_engine(server: FakeServer, state: SyncState | None = None, **kwargs: object) -> SubscriptionSyncEngine:
    client = GpodderClient(GpodderAuth(USERNAME, PASSWORD), server)
    return SubscriptionSyncEngine(client, state or SyncState(), **kwargs)


def mock_client(remote: SubscriptionChange, upload_timestamp: int = 1100) -> MagicMock:
    client = MagicMock()
    client.upload_subscription_changes.return_value = UploadResponse(timestamp=upload_timestamp)
    client.get_subscription_changes.return_value = remote
    return client


class TestRewriteUrls:
    """Tests for rewrite_urls helper."""

    def test_rewrites_and_drops(self) -> None:
        result = rewrite_urls([FEED_A, FEED_B, FEED_C], {FEED_A: FEED_A + "?v=2", FEED_B: ""})

        assert result == {FEED_A + "?v=2", FEED_C}


class TestSubscriptionSyncEngine:
    """Tests for SubscriptionSyncEngine against the fake server."""

    def test_first_sync_uploads_delta(self, server: FakeServer) -> None:
        engine = make_engine(server)

        result = engine.sync("laptop", [FEED_A, FEED_B, FEED_C], [], None, local_subscriptions=[FEED_A, FEED_B, FEED_C])

        assert result.confirmed.added == frozenset({FEED_A, FEED_B, FEED_C})
        assert result.confirmed.timestamp == 1001
        assert result.applied.is_empty
        assert result.previous_checkpoint is None
        assert result.checkpoint == Checkpoint(1001)
        assert result.advanced
        assert result.state == {FEED_A, FEED_B, FEED_C}
        assert engine.state.get(USERNAME, "laptop", SUBS) == Checkpoint(1001)
        assert server.current_subscriptions("laptop") == {FEED_A, FEED_B, FEED_C}

    def test_empty_delta_skips_upload(self, server: FakeServer) -> None:
        engine = make_engine(server)

        result = engine.sync("laptop", [], [], None)

        assert server.requests_to("POST", "/api/2/subscriptions") == []
        assert result.confirmed.is_empty
        assert result.checkpoint == Checkpoint(1000)

    def test_second_device_receives_changes(self, server: FakeServer) -> None:
        state = SyncState()
        engine = make_engine(server, state)
        engine.sync("laptop", [FEED_A, FEED_B], [], None)

        result = engine.sync("phone", [], [], None, local_subscriptions=set())

        assert result.applied.added == frozenset({FEED_A, FEED_B})
        assert result.state == {FEED_A, FEED_B}
        assert state.get(USERNAME, "phone", SUBS) == Checkpoint(1001)

    def test_sync_is_idempotent(self, server: FakeServer) -> None:
        engine = make_engine(server)
        first = engine.sync("laptop", [FEED_A], [], None, local_subscriptions=[FEED_A])

        second = engine.sync("laptop", [], [], first.checkpoint, local_subscriptions=first.state)

        assert second.applied.is_empty
        assert second.state == first.state
        assert second.checkpoint == first.checkpoint
        assert not second.advanced

    def test_url_rewrites_applied_to_local_state(self, server: FakeServer) -> None:
        server.rewrites = {FEED_A: FEED_A + "?v=2", FEED_B: ""}
        engine = make_engine(server)

        result = engine.sync("laptop", [FEED_A, FEED_B], [], None, local_subscriptions=[FEED_A, FEED_B, FEED_C])

        assert result.url_rewrites == {FEED_A: FEED_A + "?v=2", FEED_B: ""}
        assert result.state == {FEED_A + "?v=2", FEED_C}

    def test_invalid_url_sends_nothing(self, server: FakeServer) -> None:
        engine = make_engine(server)

        with pytest.raises(ValidationError, match="not a valid podcast URL"):
            engine.sync("laptop", ["not a url"], [], None)

        assert server.requests == []

    def test_overlapping_delta_rejected(self, server: FakeServer) -> None:
        engine = make_engine(server)

        with pytest.raises(ValidationError, match="both added and removed"):
            engine.sync("laptop", [FEED_A], [FEED_A], None)

        assert server.requests == []

    def test_failure_leaves_checkpoint_unchanged(self, server: FakeServer) -> None:
        state = SyncState()
        engine = make_engine(server, state)
        first = engine.sync("laptop", [FEED_A], [], None)
        server.fail_next("GET", "/api/2/subscriptions", status=503)

        with pytest.raises(TransportError) as exc_info:
            engine.sync("laptop", [FEED_B], [], first.checkpoint)

        error = exc_info.value
        assert error.retryable is True
        assert error.resource_class == "subscriptions"
        assert error.device_id == "laptop"
        assert error.checkpoint == first.checkpoint
        assert state.get(USERNAME, "laptop", SUBS) == first.checkpoint

        retry = engine.sync("laptop", [FEED_B], [], first.checkpoint)
        assert retry.checkpoint > first.checkpoint

    def test_network_error_on_upload(self, server: FakeServer) -> None:
        state = SyncState()
        engine = make_engine(server, state)
        server.fail_next("POST", "/api/2/subscriptions", status=None)

        with pytest.raises(TransportError, match="connection reset"):
            engine.sync("laptop", [FEED_A], [], None)

        assert state.get(USERNAME, "laptop", SUBS) is None
        assert server.subscription_log == []

    def test_server_cursor_regression(self, server: FakeServer) -> None:
        state = SyncState()
        engine = make_engine(server, state)
        first = engine.sync("laptop", [FEED_A], [], None)
        server.clock = 500

        with pytest.raises(CheckpointConflict, match="older than checkpoint"):
            engine.sync("laptop", [], [], first.checkpoint)

        assert state.get(USERNAME, "laptop", SUBS) == first.checkpoint

    def test_stale_checkpoint_is_rejected(self, server: FakeServer) -> None:
        state = SyncState()
        engine = make_engine(server, state)
        engine.sync("laptop", [FEED_A], [], None)

        with pytest.raises(CheckpointConflict, match="stale"):
            engine.sync("laptop", [], [], None)


class TestMerge:
    """Tests for echo filtering and conflict resolution."""

    def test_own_upload_echo_is_not_applied(self) -> None:
        client = mock_client(SubscriptionChange(added={FEED_A, FEED_B}, timestamp=1100))
        engine = SubscriptionSyncEngine(client, SyncState(), account=USERNAME)

        result = engine.sync("laptop", [FEED_A], [], None)

        assert result.applied.added == frozenset({FEED_B})
        assert result.conflicts == []

    def test_conflict_server_wins_by_default(self) -> None:
        client = mock_client(SubscriptionChange(added={FEED_A}, timestamp=1100))
        engine = SubscriptionSyncEngine(client, SyncState(), account=USERNAME)

        result = engine.sync("laptop", [], [FEED_A], None, local_subscriptions=[FEED_A, FEED_B])

        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert (conflict.url, conflict.local, conflict.remote, conflict.resolution) == (FEED_A, "remove", "add", "add")
        assert result.applied.added == frozenset({FEED_A})
        assert result.state == {FEED_A, FEED_B}
        restored = client.upload_subscription_changes.call_args_list[-1].args
        assert restored[0] == "laptop"
        assert (restored[1].added, restored[1].removed) == (frozenset({FEED_A}), frozenset())

    def test_conflict_local_wins(self) -> None:
        client = mock_client(SubscriptionChange(removed={FEED_A}, timestamp=1100))
        engine = SubscriptionSyncEngine(client, SyncState(), account=USERNAME, conflict_policy=local_wins)

        result = engine.sync("laptop", [FEED_A], [], None, local_subscriptions=[FEED_B])

        assert result.conflicts[0].resolution == "add"
        assert result.applied.is_empty
        assert result.state == {FEED_A, FEED_B}
        assert client.upload_subscription_changes.call_count == 1

    def test_bad_policy_result(self) -> None:
        client = mock_client(SubscriptionChange(removed={FEED_A}, timestamp=1100))
        engine = SubscriptionSyncEngine(
            client, SyncState(), account=USERNAME, conflict_policy=lambda url, local, remote: "maybe"
        )

        with pytest.raises(ValueError, match="maybe"):
            engine.sync("laptop", [FEED_A], [], None)

    def test_account_defaults_to_client_username(self) -> None:
        client = GpodderClient(GpodderAuth("bob", "pw"), MagicMock())

        engine = SubscriptionSyncEngine(client, SyncState())

        assert engine.account == "bob"


class TestConflictConvergence:
    """Resolved conflicts must reach the server and the other devices."""

    def test_server_wins_restores_remote_add(self, server: FakeServer) -> None:
        engine = make_engine(server)
        laptop = engine.sync("laptop", [FEED_A], [], None)
        phone = engine.sync("phone", [], [], None, local_subscriptions=set())
        engine.sync("tablet", [FEED_A], [], None)

        result = engine.sync("laptop", [], [FEED_A], laptop.checkpoint, local_subscriptions={FEED_A})

        assert [c.resolution for c in result.conflicts] == ["add"]
        assert result.state == {FEED_A}
        assert server.current_subscriptions("laptop") == {FEED_A}
        assert server.current_subscriptions() == {FEED_A}
        assert engine.state.get(USERNAME, "laptop", SUBS) == result.checkpoint

        other = engine.sync("phone", [], [], phone.checkpoint, local_subscriptions=phone.state)
        assert other.state == {FEED_A}

        again = engine.sync("laptop", [], [], result.checkpoint, local_subscriptions=result.state)
        assert again.applied.is_empty
        assert again.state == {FEED_A}

    def test_local_wins_keeps_uploaded_remove(self, server: FakeServer) -> None:
        engine = make_engine(server, conflict_policy=local_wins)
        laptop = engine.sync("laptop", [FEED_A], [], None)
        phone = engine.sync("phone", [], [], None, local_subscriptions=set())
        engine.sync("tablet", [FEED_A], [], None)

        result = engine.sync("laptop", [], [FEED_A], laptop.checkpoint, local_subscriptions={FEED_A})

        assert [c.resolution for c in result.conflicts] == ["remove"]
        assert result.state == set()
        assert server.current_subscriptions("laptop") == set()
        assert len(server.requests_to("POST", "/api/2/subscriptions/alice/laptop")) == 2

        other = engine.sync("phone", [], [], phone.checkpoint, local_subscriptions=phone.state)
        assert other.state == set()

    def test_failed_restore_keeps_checkpoint(self) -> None:
        client = mock_client(SubscriptionChange(added={FEED_A}, timestamp=1100))
        client.upload_subscription_changes.side_effect = [
            UploadResponse(timestamp=1100),
            TransportError("Request failed: connection reset"),
        ]
        state = SyncState()
        engine = SubscriptionSyncEngine(client, state, account=USERNAME)

        with pytest.raises(TransportError):
            engine.sync("laptop", [], [FEED_A], None)

        assert state.get(USERNAME, "laptop", SUBS) is None
