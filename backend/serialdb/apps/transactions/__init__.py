from .coordinator import LedgerCommitFailed, TransactionCoordinator

__all__ = ["LedgerCommitFailed", "TransactionCoordinator"]
