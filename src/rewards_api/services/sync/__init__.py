"""CRM propagation: direct calls with a durable outbox fallback."""

from .crm_client import CrmClient, CrmError, CrmRejectedError, HttpCrmClient, InMemoryCrmClient
from .dispatcher import SyncAttempt, SyncDispatcher, build_crm_client
from .outbox import ClaimedEntry, FailureOutcome, SyncOutbox, compute_backoff

__all__ = [
    "ClaimedEntry",
    "CrmClient",
    "CrmError",
    "CrmRejectedError",
    "FailureOutcome",
    "HttpCrmClient",
    "InMemoryCrmClient",
    "SyncAttempt",
    "SyncDispatcher",
    "SyncOutbox",
    "build_crm_client",
    "compute_backoff",
]
