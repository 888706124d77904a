"""Custom exceptions for the pool indexer.

Lookup misses, amount divergence and uniqueness conflicts are normal
reconciliation branches and are NOT represented here. Only conditions that
abort an event (or a request) raise.
"""


class IndexerError(Exception):
    """Base exception for all indexer errors."""


class EventDecodeError(IndexerError):
    """Raised when a payload framed as a domain event cannot be decoded."""


class UnitConversionError(IndexerError):
    """Raised when an amount cannot be represented in the requested unit."""


class StakeUpdateError(IndexerError):
    """Raised when a stake adjustment fails; the event must be redelivered."""


class LedgerReadError(IndexerError):
    """Raised when the ledger RPC errors or returns an undecodable account."""


class WebhookAuthError(IndexerError):
    """Raised when a webhook request carries a missing or invalid signature."""
