"""Error types raised inside the listening tracker."""


class TrackerError(Exception):
    """Base class for listening tracker errors."""


class ObservationDataInvalid(TrackerError):
    """An observation signal carried malformed or missing track data."""


class EnrichmentUnavailable(TrackerError):
    """Track metadata could not be resolved from the remote API."""


class PersistenceError(TrackerError):
    """Base class for storage backend failures."""


class PersistenceReadFailed(PersistenceError):
    """Reading a key from the storage backend failed."""


class PersistenceWriteFailed(PersistenceError):
    """Writing to the storage backend failed."""


class StorageQuotaExceeded(PersistenceWriteFailed):
    """A write would push the backend over its byte quota."""

    def __init__(self, used: int, quota: int):
        super().__init__(f"Storage quota exceeded: {used} of {quota} bytes")
        self.used = used
        self.quota = quota
