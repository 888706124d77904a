"""Ledger layer -- direct RPC reads of program accounts and transactions."""

from indexer.ledger.client import LedgerClient
from indexer.ledger.rpc_client import SolanaRpcClient

__all__ = ["LedgerClient", "SolanaRpcClient"]
