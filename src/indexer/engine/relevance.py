"""Implied relevance: the market's belief signal derived from pool reserves."""

from decimal import Decimal

from indexer.logging import get_logger
from indexer.models import (
    ImpliedRelevanceRecord,
    PoolRecord,
    RecordedBy,
    RelevanceEventType,
)
from indexer.store.repository import MirrorRepository

logger = get_logger(__name__)

NEUTRAL_RELEVANCE = Decimal("0.5")


def implied_relevance(reserve_long: Decimal, reserve_short: Decimal) -> Decimal:
    """Return reserve_long / (reserve_long + reserve_short), always in [0, 1].

    A freshly deployed pool with both reserves at zero is neutral (0.5).

    Raises:
        ValueError: If either reserve is negative.
    """
    if reserve_long < 0 or reserve_short < 0:
        raise ValueError(f"Reserves cannot be negative: long={reserve_long}, short={reserve_short}")
    total = reserve_long + reserve_short
    if total == 0:
        return NEUTRAL_RELEVANCE
    return reserve_long / total


class ImpliedRelevanceRecorder:
    """Appends relevance observations to the provenance-tagged history."""

    def __init__(self, repository: MirrorRepository) -> None:
        self._repository = repository

    async def record(
        self,
        pool: PoolRecord,
        event_reference: str,
        reserve_long: Decimal,
        reserve_short: Decimal,
        event_type: RelevanceEventType,
        recorded_at: str | None = None,
    ) -> bool:
        """Write one indexer-confirmed observation keyed by event reference.

        Returns True when a row was written. Replays of an already-confirmed
        reference are no-ops.
        """
        if not pool.belief_id:
            logger.warning(
                "relevance_skipped_no_belief",
                pool=pool.pool_address,
                event_reference=event_reference,
            )
            return False

        value = implied_relevance(reserve_long, reserve_short)
        written = await self._repository.upsert_implied_relevance(
            ImpliedRelevanceRecord(
                event_reference=event_reference,
                pool_address=pool.pool_address,
                post_id=pool.post_id,
                belief_id=pool.belief_id,
                implied_relevance=value,
                reserve_long=reserve_long,
                reserve_short=reserve_short,
                event_type=event_type,
                recorded_by=RecordedBy.INDEXER,
                confirmed=True,
                recorded_at=recorded_at,
            )
        )
        logger.debug(
            "implied_relevance_recorded",
            pool=pool.pool_address,
            event_reference=event_reference,
            event_type=event_type.value,
            implied_relevance=str(value),
            written=written,
        )
        return written
