"""Offline-tolerant sync client for LMS progress and assignment mutations.

Async usage::

    from lms_sync import FileBackend, OfflineSyncClient

    async with OfflineSyncClient("https://lms.example", storage=FileBackend("~/.lms")) as client:
        await client.sync_event("user-1", "course-1", "lesson-3", percent=100)
        client.set_online(False)   # later calls are buffered
        client.set_online(True)    # buffered calls replay shortly after

Several clients of the same user can share a refresh channel so only one of
them refreshes the session at a time::

    hub = LocalBroadcastHub()
    a = OfflineSyncClient(url, channel=hub.channel("lms-auth-refresh"))
    b = OfflineSyncClient(url, channel=hub.channel("lms-auth-refresh"))

Optional extras::

    pip install lms-sync[redis]   # cross-process refresh coordination
"""

from ._version import __version__
from .broadcast import BroadcastChannel, LocalBroadcastHub, RedisBroadcastChannel
from .client import OfflineSyncClient
from .credentials import CredentialStore, Session
from .drain import DrainWorker
from .errors import (
    ApiError,
    NetworkError,
    NotAuthenticatedError,
    QueueNotInitializedError,
    RequestTimeoutError,
    SessionGateError,
    StorageError,
    SyncError,
    is_retriable,
    should_queue,
)
from .idempotency import ActionIdentifiers, build_idempotency_key, create_action_identifiers
from .network_monitor import ConnectivityMonitor
from .offline_queue import MutationQueue
from .pipeline import RequestPipeline
from .producers import AssignmentRequest, AssignmentRequests, AssignmentSubmission, ProgressSync
from .refresh import RefreshCoordinator, SingleFlight
from .session_gate import SessionGate
from .storage import FileBackend, KeyValueBackend, MemoryBackend
from .transport import HttpxTransport, Transport
from .types import (
    PipelineConfig,
    ProcessResult,
    QueueConfig,
    QueueItem,
    QueueItemKind,
    QueuePriority,
    RefreshConfig,
    RefreshPhase,
    RefreshState,
    Response,
)

__all__ = [
    "__version__",
    "OfflineSyncClient",
    "MutationQueue",
    "DrainWorker",
    "ConnectivityMonitor",
    "RequestPipeline",
    "SessionGate",
    "CredentialStore",
    "Session",
    "RefreshCoordinator",
    "SingleFlight",
    "BroadcastChannel",
    "LocalBroadcastHub",
    "RedisBroadcastChannel",
    "ProgressSync",
    "AssignmentRequests",
    "AssignmentRequest",
    "AssignmentSubmission",
    "Transport",
    "HttpxTransport",
    "KeyValueBackend",
    "MemoryBackend",
    "FileBackend",
    "ActionIdentifiers",
    "build_idempotency_key",
    "create_action_identifiers",
    "QueueItem",
    "QueueItemKind",
    "QueuePriority",
    "ProcessResult",
    "RefreshPhase",
    "RefreshState",
    "Response",
    "QueueConfig",
    "RefreshConfig",
    "PipelineConfig",
    "SyncError",
    "ApiError",
    "NotAuthenticatedError",
    "RequestTimeoutError",
    "NetworkError",
    "SessionGateError",
    "StorageError",
    "QueueNotInitializedError",
    "is_retriable",
    "should_queue",
]
