"""decisionos: single-recommendation decision core.

decisionos produces at most one active recommendation per household
interaction, records every decision and response in an append-only ledger,
and guarantees a rescue path that always yields an executable fallback.

Key features:
    - Static SQL tenant-safety analyzer (no SQL parser required)
    - Interchangeable in-memory and relational storage backends
    - Session / decision-lock state machine with idempotent retries
    - Deterministic rescue engine with anti-repetition rotation
    - Prometheus-format metrics and structured JSON logging

Example:
    >>> from decisionos.memory_store import MemoryStore
    >>> from decisionos.sessions import SessionManager
    >>> manager = SessionManager(MemoryStore(), primary_recommend=lambda c: None)
    >>> session = manager.start("hh-1", {"intents": ["easy"]})
"""

__all__ = ["__version__"]

__version__ = "0.3.0"
