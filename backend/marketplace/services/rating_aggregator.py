import logging
import sqlite3
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

from marketplace.models import ListingRating
from marketplace.services.store import MarketplaceStore

logger = logging.getLogger(__name__)


def summarize_scores(scores: Iterable[int]) -> Tuple[float, int]:
    """Mean of ``scores`` rounded half-up to one decimal place, with the sample size."""
    values = [int(score) for score in scores]
    if not values:
        return 0.0, 0
    mean = Decimal(sum(values)) / Decimal(len(values))
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)), len(values)


class RatingAggregator:
    def __init__(self, store: MarketplaceStore):
        self._store = store

    def recompute_in(self, conn: sqlite3.Connection, listing_id: str) -> ListingRating:
        # Must run inside the caller's store transaction so the snapshot includes the
        # rating that triggered it and every rating committed before it.
        average, count = summarize_scores(self._store.fetch_rating_scores(conn, listing_id))
        self._store.write_listing_rating(conn, listing_id, average, count)
        logger.info("listing_rating_recomputed listing=%s average=%.1f count=%d", listing_id, average, count)
        return ListingRating(average=average, count=count)

    def recompute(self, listing_id: str) -> ListingRating:
        with self._store.transaction() as conn:
            return self.recompute_in(conn, listing_id)
