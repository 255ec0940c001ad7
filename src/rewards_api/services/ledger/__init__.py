"""Points ledger primitives."""

from .ledger_service import BalanceAudit, LedgerService, account_snapshot

__all__ = ["BalanceAudit", "LedgerService", "account_snapshot"]
