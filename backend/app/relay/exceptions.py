"""Exception hierarchy for the tick relay."""


class RelayError(Exception):
    """Base exception for all relay errors."""


class UpstreamConnectFailure(RelayError):
    """Raised when the upstream feed cannot be set up (network or credentials)."""


class InvalidSubscriptionRequest(RelayError):
    """Raised when a session asks for an unknown exchange or a malformed token."""


class DeliveryFailure(RelayError):
    """Raised when a message cannot be delivered to one downstream session."""
