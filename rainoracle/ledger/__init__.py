from rainoracle.ledger.adapter import (
    InMemoryLedger,
    LedgerClient,
    LedgerEvent,
    Report,
    make_ledger,
)

__all__ = ["InMemoryLedger", "LedgerClient", "LedgerEvent", "Report", "make_ledger"]
