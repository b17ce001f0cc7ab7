"""
Error taxonomy for the entitlement engine.

Each error carries the HTTP status the edge should answer with, so routers
can translate without re-deciding retry semantics.
"""


class EntitlementError(Exception):
    """Base class for entitlement engine failures"""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthenticationError(EntitlementError):
    """Missing or invalid credential. Never retried internally."""

    status_code = 401


class NotFoundError(EntitlementError):
    """No local user matches an inbound observation. Redelivery cannot help."""

    status_code = 200


class ProviderUnavailable(EntitlementError):
    """Network error, timeout or API error while talking to the billing provider."""

    status_code = 503


class StoreWriteError(EntitlementError):
    """The entitlement store could not persist a write."""

    status_code = 500
