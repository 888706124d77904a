"""Abstract ledger client interface.

Defines the contract for all ledger readers. Engine and transport code
depends only on this interface, keeping RPC-specific details isolated in
the concrete implementation.
"""

from abc import ABC, abstractmethod

from indexer.models import PoolAccountState


class LedgerClient(ABC):
    """Abstract base class for direct ledger reads."""

    @abstractmethod
    async def connect(self) -> None:
        """Initialize the underlying connection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
        ...

    @abstractmethod
    async def fetch_pool_state(self, pool_address: str) -> PoolAccountState | None:
        """Read a pool account directly from the ledger.

        Returns None when the account does not exist.
        Raises LedgerReadError on RPC failure or an undecodable account.
        """
        ...

    @abstractmethod
    async def get_block_time(self, signature: str) -> int | None:
        """Return the block time (Unix seconds) of a confirmed transaction.

        Returns None when the transaction is unknown or has no block time.
        """
        ...
