"""Core sync functionality."""

from .auth import GpodderAuth
from .client import GpodderClient
from .episodes import EpisodeActionSyncEngine, merge_actions
from .operations import SyncOperations
from .state import SyncState
from .subscriptions import SubscriptionSyncEngine, local_wins, server_wins
from .transport import RequestsTransport, Transport, TransportResponse

__all__ = [
    "EpisodeActionSyncEngine",
    "GpodderAuth",
    "GpodderClient",
    "RequestsTransport",
    "SubscriptionSyncEngine",
    "SyncOperations",
    "SyncState",
    "Transport",
    "TransportResponse",
    "local_wins",
    "merge_actions",
    "server_wins",
]
