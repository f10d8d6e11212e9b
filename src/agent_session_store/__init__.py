"""
Agent Session Store - in-memory session and message state for agent chat clients.

This library keeps the messages, streaming state, context usage and tool
permissions of many chat sessions against an agent backend. Each session
holds a bounded window of messages; idle sessions are trimmed around the
user's scroll position and evicted least-recently-used first.

Example:
    from agent_session_store import ComposedStore, StoreConfig, build_context

    # Build a store from configuration
    store = ComposedStore(build_context(StoreConfig.from_env()))
    store.hydrate()

    # Switch session and load its latest messages
    await store.set_current_session("ses_123")

    # Send a message and consume the streamed reply
    result = await store.send_message("hello", "anthropic", "claude-sonnet-4", agent="build")

    # Context usage of the current session
    usage = store.get_context_usage(context_limit=200_000, output_limit=8_000)
"""

from agent_session_store.agents import AgentRegistry
from agent_session_store.attachments import AttachmentStore
from agent_session_store.config import (
    AttachmentConfig,
    BackendConfig,
    StorageConfig,
    StoreConfig,
    StreamingConfig,
    UsageConfig,
    WindowConfig,
)
from agent_session_store.errors import (
    AttachmentTooLargeError,
    EvictionSkipped,
    LoadResult,
    OperationAbortedError,
    PermissionConflict,
    PermissionResult,
    SendResult,
    SessionResult,
    SessionStoreError,
    StaleAnchorError,
    TransientFetchError,
)
from agent_session_store.events import (
    PERMISSION_QUEUED,
    SESSION_EVICTED,
    SNAPSHOT_CHANGED,
    STATE_CHANGED,
    STREAM_PHASE_CHANGED,
    EventBus,
    PermissionQueuedEvent,
    SessionEvictedEvent,
    SnapshotChangedEvent,
    StateChangedEvent,
    StreamPhaseChangedEvent,
)
from agent_session_store.http_client import HttpBackendClient
from agent_session_store.models import (
    AbortPrompt,
    AgentDefinition,
    AttachedFile,
    ContextUsage,
    Message,
    MessageInfo,
    ModelSelection,
    Part,
    PermissionRequest,
    Session,
    SessionMemoryState,
    StreamLifecycle,
    ViewportAnchor,
)
from agent_session_store.permissions import (
    EditModeStore,
    PermissionGate,
    calculate_edit_permission_ui_state,
    get_agent_default_edit_permission,
)
from agent_session_store.runtime import StoreContext, build_context, default_context
from agent_session_store.selections import SelectionStore
from agent_session_store.sessions import SessionRegistry
from agent_session_store.storage import StateStorage
from agent_session_store.store import ComposedStore, StoreSnapshot
from agent_session_store.streaming import StreamingLifecycleTracker
from agent_session_store.transport import BackendClient, MessagePage, StreamPartEvent
from agent_session_store.usage import ContextUsageTracker, calculate_context_usage
from agent_session_store.window import EvictionReport, SessionWindowManager

__version__ = "0.1.0"

__all__ = [
    # Store
    "ComposedStore",
    "StoreSnapshot",
    "StoreContext",
    "build_context",
    "default_context",
    # Config
    "StoreConfig",
    "WindowConfig",
    "StreamingConfig",
    "UsageConfig",
    "AttachmentConfig",
    "StorageConfig",
    "BackendConfig",
    # Slices
    "SessionRegistry",
    "SessionWindowManager",
    "EvictionReport",
    "StreamingLifecycleTracker",
    "ContextUsageTracker",
    "calculate_context_usage",
    "SelectionStore",
    "EditModeStore",
    "PermissionGate",
    "calculate_edit_permission_ui_state",
    "get_agent_default_edit_permission",
    "AttachmentStore",
    "AgentRegistry",
    "StateStorage",
    # Backend
    "BackendClient",
    "HttpBackendClient",
    "MessagePage",
    "StreamPartEvent",
    # Models
    "Session",
    "Message",
    "MessageInfo",
    "Part",
    "SessionMemoryState",
    "ViewportAnchor",
    "StreamLifecycle",
    "AbortPrompt",
    "ContextUsage",
    "PermissionRequest",
    "ModelSelection",
    "AgentDefinition",
    "AttachedFile",
    # Events
    "EventBus",
    "STATE_CHANGED",
    "SNAPSHOT_CHANGED",
    "STREAM_PHASE_CHANGED",
    "SESSION_EVICTED",
    "PERMISSION_QUEUED",
    "StateChangedEvent",
    "SnapshotChangedEvent",
    "StreamPhaseChangedEvent",
    "SessionEvictedEvent",
    "PermissionQueuedEvent",
    # Errors
    "SessionStoreError",
    "TransientFetchError",
    "StaleAnchorError",
    "PermissionConflict",
    "AttachmentTooLargeError",
    "OperationAbortedError",
    "EvictionSkipped",
    "LoadResult",
    "SendResult",
    "PermissionResult",
    "SessionResult",
]
