# Object storage for match records and batch manifests
from .store import (
    MAX_OBJECT_BYTES,
    PENDING_STATE_KEY,
    HttpObjectStore,
    InMemoryObjectStore,
    LocalObjectStore,
    ObjectStore,
    batch_index_key,
    manifest_key,
    match_key,
)

__all__ = [
    "MAX_OBJECT_BYTES",
    "PENDING_STATE_KEY",
    "HttpObjectStore",
    "InMemoryObjectStore",
    "LocalObjectStore",
    "ObjectStore",
    "batch_index_key",
    "manifest_key",
    "match_key",
]
