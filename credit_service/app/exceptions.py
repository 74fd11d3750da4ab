from __future__ import annotations


class CreditLedgerError(Exception):
    """Base exception for all credit-ledger errors."""


class ValidationError(CreditLedgerError):
    """Invalid input (e.g., non-positive credits or expiration days)."""


class NotFoundError(CreditLedgerError):
    """Student or credit batch does not exist."""


class AccessDeniedError(CreditLedgerError):
    """Credit batch does not belong to the given studio."""


class NoAvailableCreditsError(CreditLedgerError):
    """No unexpired batch with remaining credits to consume."""


class ExpiredCreditError(CreditLedgerError):
    """Restore attempted against a batch past its expiration date."""


class LedgerConflictError(CreditLedgerError):
    """Concurrent writers kept winning the batch update; retries exhausted."""
