"""
Errors raised by the entitlement core
"""


class EntitlementError(Exception):
    """Base class for entitlement and billing errors."""


class NotFound(EntitlementError):
    """The referenced user or billing customer has no entitlement record."""


class InvalidSignature(EntitlementError):
    """A webhook payload failed authenticity verification or could not be parsed."""


class UpstreamUnavailable(EntitlementError):
    """Stripe could not be reached (or timed out) while re-fetching state."""


class StorageConflict(EntitlementError):
    """Concurrent writes to the same record could not be committed."""
