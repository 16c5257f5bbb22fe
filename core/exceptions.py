"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ExchangeError(RuntimeError):
    """Exchange rejected a request (4xx other than auth/rate limit)."""

    def __init__(self, message: str, status_code: Optional[int] = None, label: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.label = label


class ExchangeAuthError(ExchangeError):
    """Credentials rejected. Fatal for the engine that owns them."""


class OrderRejected(ExchangeError):
    """Order placement failed (insufficient margin, invalid size, ...)."""


class EngineNotFound(KeyError):
    """No engine with the requested id exists in the ledger."""


class EngineFatalError(RuntimeError):
    """Unrecoverable condition that must stop the engine (not the manager)."""

    def __init__(self, engine_id: int, reason: str):
        super().__init__(f"engine {engine_id}: {reason}")
        self.engine_id = engine_id
        self.reason = reason
