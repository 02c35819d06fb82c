"""
Error taxonomy for the sync and alert pipeline.

  - CollaboratorError: the commerce platform failed or answered garbage.
    Caught at the tenant boundary; recorded as that tenant's failure.
  - TenantNotFoundError: manual sync requested for an unknown tenant.

Persistence errors are plain SQLAlchemy exceptions and structural errors
(cannot list tenants) propagate untouched.
"""


class StockWatchError(Exception):
    """Base class for pipeline errors."""


class CollaboratorError(StockWatchError):
    """The external commerce platform call failed."""

    def __init__(self, message: str, tenant_id: str | None = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class CollaboratorTimeoutError(CollaboratorError):
    """The external call did not answer within the configured timeout."""


class MalformedResponseError(CollaboratorError):
    """The external call answered with a payload we could not parse."""


class TenantNotFoundError(StockWatchError, LookupError):
    """No tenant exists with the requested id."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} not found")
        self.tenant_id = tenant_id
