"""Reconciliation engine -- event handlers and the derived-state updaters they drive."""

from indexer.engine.processor import EventProcessor, ProcessingResult
from indexer.engine.projector import PoolStateProjector
from indexer.engine.relevance import ImpliedRelevanceRecorder, implied_relevance
from indexer.engine.settlement import EpochProcessingClient, SettlementTrigger
from indexer.engine.stake import FundingSource, StakeLedger

__all__ = [
    "EpochProcessingClient",
    "EventProcessor",
    "FundingSource",
    "ImpliedRelevanceRecorder",
    "PoolStateProjector",
    "ProcessingResult",
    "SettlementTrigger",
    "StakeLedger",
    "implied_relevance",
]
