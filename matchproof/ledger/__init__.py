# Ledger client interface and local implementations
from .base import (
    CommitmentLevel,
    ConfirmationStatus,
    LedgerClient,
    LocatedAnchor,
    PayloadSigner,
    TransactionStatus,
)
from .memory import (
    InMemoryLedger,
    LedgerTransaction,
    LocalLedger,
    MAX_LEDGER_PAYLOAD_BYTES,
)

__all__ = [
    "CommitmentLevel",
    "ConfirmationStatus",
    "LedgerClient",
    "LocatedAnchor",
    "PayloadSigner",
    "TransactionStatus",
    "InMemoryLedger",
    "LedgerTransaction",
    "LocalLedger",
    "MAX_LEDGER_PAYLOAD_BYTES",
]
