from __future__ import annotations


class LedgerError(Exception):
    """Base class for errors surfaced to ledger callers."""


class ConfigurationError(LedgerError):
    """Required configuration is missing or invalid; fatal at startup."""


class NetworkError(LedgerError):
    """A remote collaborator could not be reached."""


class ApiError(LedgerError):
    """A remote collaborator answered with an error."""


class ValidationError(LedgerError, ValueError):
    """User input failed validation. No remote call was made."""


class RatesNotReady(LedgerError):
    """Currency-dependent operations are blocked until rates are loaded."""


class TransactionNotFound(LedgerError):
    pass
