"""Error taxonomy for billing reconciliation.

Routers translate these into HTTP responses; the batch sweep records them
per user instead of aborting.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all reconciliation errors."""


class SignatureInvalid(BillingError):
    """Webhook payload failed signature verification."""


class MalformedEvent(BillingError):
    """Event is missing data required to act on it."""


class ProviderUnavailable(BillingError):
    """Payment provider could not be reached or returned a server error."""


class CustomerNotFound(BillingError):
    """Provider has no customer with the requested id."""

    def __init__(self, customer_id: str) -> None:
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} not found")


class CustomerDeleted(BillingError):
    """Provider customer exists but has been deleted."""

    def __init__(self, customer_id: str) -> None:
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} has been deleted")


class RecordNotFound(BillingError):
    """No local billing record matched any lookup key."""


class StaleSnapshot(BillingError):
    """Record kept changing while the provider state was being read."""


class PersistenceFailure(BillingError):
    """Writing to the record store failed."""


class SyncInvocationError(BillingError):
    """Sweep endpoint answered with a non-success status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
