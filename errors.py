"""Errors raised while reconciling contact identities."""


class ReconciliationError(RuntimeError):
    """Base class for every failure of an identify call."""


class InvalidInput(ReconciliationError):
    """Raised when neither an email nor a phone number was supplied."""


class StoreFailure(ReconciliationError):
    """Raised when the contact store fails to answer a query or apply a write."""


class InconsistentCluster(ReconciliationError):
    """Raised when stored links violate the one-primary-per-cluster shape."""
