"""Custom exception classes for the connector engine."""

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class FieldError:
    """A single configuration or mapping problem, tied to a field name."""
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class ConnectorHubError(Exception):
    """Base exception for the connector engine."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(ConnectorHubError):
    """Raised when process-level configuration is missing or invalid."""
    pass


class ValidationError(ConnectorHubError):
    """Raised when connector configuration or mappings are malformed."""

    def __init__(self, message: str = "Validation failed", errors: Optional[List[FieldError]] = None):
        self.errors = errors or []
        if self.errors:
            message = f"{message}: " + "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(message)


class ResourceNotFoundError(ConnectorHubError):
    """Raised when a requested resource is not found."""
    pass


class UnsupportedProvider(ConnectorHubError):
    """Raised when a catalog entry has no registered adapter."""
    pass


class Unauthorized(ConnectorHubError):
    """Raised when an inbound webhook fails signature verification."""
    pass


class ConnectorConnectionError(ConnectorHubError):
    """Raised when a provider call fails (network, timeout, auth, remote error)."""

    def __init__(self, message: str = "Connection failed", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CorruptCredential(ConnectorHubError):
    """Raised when stored credentials cannot be decrypted with the current key."""
    pass


class SyncInProgressError(ConnectorHubError):
    """Raised when a sync is requested while another run holds the connector."""
    pass


class InvalidStateTransition(ConnectorHubError):
    """Raised when a sync log is moved along a transition the state machine forbids."""
    pass
