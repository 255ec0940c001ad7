"""Background workers started from the application lifespan."""

from .expiry_sweep import ExpirySweepWorker
from .sync_outbox import SyncOutboxWorker

__all__ = ["ExpirySweepWorker", "SyncOutboxWorker"]
