"""Offline cache exception hierarchy."""


class OfflineCacheError(Exception):
    """Base exception for all cache, store and sync errors."""


class NotInitializedError(OfflineCacheError):
    """A component was used before initialize()/startup() completed."""

    def __init__(self, component: str = "Cache service"):
        self.component = component
        super().__init__(f"{component} not initialized. Call initialize() first.")


class DuplicateKeyError(OfflineCacheError):
    """create() was called with an identifier that already exists."""

    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"Record '{key}' already exists in '{collection}'")


class RecordNotFoundError(OfflineCacheError):
    """A partial update targeted a record that does not exist."""

    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"Record '{key}' not found in '{collection}'")


class StoreTransactionError(OfflineCacheError):
    """The underlying store failed a transaction."""

    def __init__(self, collection: str, operation: str, message: str):
        self.collection = collection
        self.operation = operation
        super().__init__(f"[{collection}] {operation} failed: {message}")


class SyncApplyError(OfflineCacheError):
    """The remote target rejected or failed to apply a queued mutation."""

    def __init__(self, item_id: str, message: str):
        self.item_id = item_id
        super().__init__(f"Sync item {item_id}: {message}")


class OfflineSyncError(OfflineCacheError):
    """A forced sync was requested while offline."""

    def __init__(self):
        super().__init__("Cannot sync while offline")


class EvictionDeleteError(OfflineCacheError):
    """Deleting one evicted or expired entry failed."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Failed to evict cache item {key}: {message}")


class CacheCapacityError(OfflineCacheError):
    """A single entry is larger than the whole cache budget."""

    def __init__(self, key: str, size_bytes: int, max_size_bytes: int):
        self.key = key
        self.size_bytes = size_bytes
        self.max_size_bytes = max_size_bytes
        super().__init__(
            f"Cache entry {key} ({size_bytes} bytes) exceeds max cache size ({max_size_bytes} bytes)"
        )
