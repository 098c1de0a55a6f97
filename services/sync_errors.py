class SyncError(Exception):
    """Base class for failures raised by the sync engine."""


class AlreadyRunningError(SyncError):
    """A run is already active for the requested scope."""

    def __init__(self, scope: str, run_id: str = None):
        self.scope = scope
        self.run_id = run_id
        super().__init__(f"A sync run is already in progress for scope '{scope}'")


class CatalogUnavailableError(SyncError):
    """The Drive API could not be reached, or kept failing after retries."""


class CatalogAuthError(CatalogUnavailableError):
    """No usable Drive credentials."""


class PersistenceUnavailableError(SyncError):
    """The database could not be opened or queried."""


class InvalidStateTransition(SyncError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move sync run from {current.value} to {requested.value}")
