from court_rotation.storage.backends import (
    KeyValueBackend,
    MemoryBackend,
    RedisBackend,
    RestBackend,
    build_backend,
)
from court_rotation.storage.state_store import (
    ConnectionStatus,
    Lease,
    SessionRepository,
    StateStore,
)

__all__ = [
    "ConnectionStatus",
    "KeyValueBackend",
    "Lease",
    "MemoryBackend",
    "RedisBackend",
    "RestBackend",
    "SessionRepository",
    "StateStore",
    "build_backend",
]
