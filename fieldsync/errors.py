"""
Error taxonomy for the sync / statistics / alerting pipeline.

Route handlers keep raising HTTPException for plain 400/401/404 cases; these
exceptions come out of the service layer and are mapped to responses by the
handlers registered in main.py.
"""


class FieldSyncError(Exception):
    """Base class for pipeline errors"""


class NotFoundError(FieldSyncError):
    """Resource absent or not owned by the caller (indistinguishable on purpose)"""


class ValidationError(FieldSyncError):
    """Malformed input, raised before any persistence or provider call"""


class ProviderNotConfiguredError(FieldSyncError):
    """Satellite provider credentials missing or integration disabled"""

    def __init__(self, message: str = "Agro API not configured"):
        super().__init__(message)


class ProviderUnavailableError(FieldSyncError):
    """Provider unreachable, timed out, or answered 5xx/429. Safe to retry later."""

    retryable = True


class ProviderError(FieldSyncError):
    """Provider answered with something we cannot use"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class PolygonNotFoundError(ProviderError):
    """The provider does not know the polygon id we hold"""


class InvalidTransitionError(FieldSyncError):
    """Sync status change outside the allowed edges"""

    def __init__(self, current, target):
        super().__init__(f"Invalid sync transition: {current} -> {target}")
        self.current = current
        self.target = target
