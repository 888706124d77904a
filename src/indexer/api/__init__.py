"""HTTP surface -- ledger webhook receiver and mirror read routes."""

from indexer.api.app import create_app

__all__ = ["create_app"]
