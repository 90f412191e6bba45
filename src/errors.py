"""
Error taxonomy for the pulse pipeline.
"""


class PulseError(Exception):
    """Base class for pipeline errors."""

    pass


class SourceUnavailable(PulseError):
    """Raised when the snapshot source cannot produce a batch."""

    pass


class PersistenceFailure(PulseError):
    """Raised when a transactional write was rolled back."""

    pass


class ProtocolViolation(PulseError):
    """Raised for malformed or unknown client messages."""

    pass


class ConnectionFailure(PulseError):
    """Raised when a message cannot be delivered to one client."""

    def __init__(self, client_id: str, reason: str):
        super().__init__(f"Client {client_id}: {reason}")
        self.client_id = client_id
        self.reason = reason
