"""
Review aggregates stored on items (review_count, average_rating).

Both fields are always derived from the full set of live review rows:
  count   = number of reviews with deleted_at IS NULL
  average = sum(rating) / count, rounded to RATING_SCALE places, half away from zero
            (0 when there are no reviews)

Nothing here applies an increment to a previously stored value, so writing the
same aggregate twice is harmless and a late writer can never reinstate an older
state than the rows it just read.
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from dotenv import load_dotenv
from sqlalchemy import Numeric, cast, func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeout
from sqlalchemy.orm import Session

from app.models.item import AVERAGE_PRECISION, AVERAGE_SCALE, Item
from app.models.review import Review
from app.services.exceptions import ItemNotFound, StorageUnavailable

load_dotenv()

RATING_SCALE = int(os.getenv("RATING_SCALE", str(AVERAGE_SCALE)))
RATING_MIN = int(os.getenv("RATING_MIN", "1"))
RATING_MAX = int(os.getenv("RATING_MAX", "5"))
AGGREGATE_WRITER = os.getenv("AGGREGATE_WRITER", "lock").lower()  # "lock" (default) or "statement"

logger = logging.getLogger(__name__)


def check_rating_settings(scale: int, rating_min: int, rating_max: int) -> None:
    """
    Reject a rating scale or range that items.average_rating cannot hold
    exactly: more decimal places than the column keeps, or a maximum rating
    whose average would overflow its integer digits.
    """
    if not 0 <= scale <= AVERAGE_SCALE:
        raise ValueError(
            f"RATING_SCALE={scale} is outside 0..{AVERAGE_SCALE}, the scale of items.average_rating"
        )
    if rating_min < 0 or rating_min > rating_max:
        raise ValueError(f"RATING_MIN={rating_min} and RATING_MAX={rating_max} do not form a valid range")
    ceiling = 10 ** (AVERAGE_PRECISION - AVERAGE_SCALE)
    if rating_max >= ceiling:
        raise ValueError(
            f"RATING_MAX={rating_max} does not fit items.average_rating "
            f"NUMERIC({AVERAGE_PRECISION},{AVERAGE_SCALE}); it must be below {ceiling}"
        )


check_rating_settings(RATING_SCALE, RATING_MIN, RATING_MAX)


@dataclass(frozen=True)
class AggregateResult:
    count: int
    average: Decimal

    def as_dict(self) -> Dict[str, object]:
        return {"count": self.count, "average": self.average}


def round_average(total, count: int, places: int = RATING_SCALE) -> Decimal:
    quantum = Decimal(1).scaleb(-places)
    if not count:
        return Decimal(0).quantize(quantum)
    mean = Decimal(str(total)) / Decimal(count)
    return mean.quantize(quantum, rounding=ROUND_HALF_UP)


@contextmanager
def storage_errors(item_id: Optional[int] = None):
    """Re-raise driver connectivity/timeout failures as StorageUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeout) as e:
        raise StorageUnavailable(
            f"Review store unavailable: {e.__class__.__name__}", item_id=item_id
        ) from e


def _live_reviews(item_id: int):
    return (Review.item_id == item_id, Review.deleted_at.is_(None))


def compute(db: Session, item_id: int) -> AggregateResult:
    """
    Count and average of the live reviews of one item. Read only.
    The caller is expected to have checked the item exists.
    """
    stmt = select(
        func.count(Review.id),
        func.coalesce(func.sum(Review.rating), 0),
    ).where(*_live_reviews(item_id))

    with storage_errors(item_id):
        count, total = db.execute(stmt).one()

    count = int(count or 0)
    return AggregateResult(count=count, average=round_average(total, count))


def get_live_item(db: Session, item_id: int, *, lock: bool = False) -> Optional[Item]:
    stmt = select(Item).where(Item.id == item_id, Item.deleted_at.is_(None))
    if lock:
        stmt = stmt.with_for_update()
    with storage_errors(item_id):
        return db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()


def apply(db: Session, item_id: int, aggregate: AggregateResult, *, item: Optional[Item] = None) -> Item:
    """
    Store a computed aggregate on the item row. Soft-deleted items are frozen
    and count as missing.
    """
    if item is None:
        item = get_live_item(db, item_id)
    if item is None:
        raise ItemNotFound(item_id)

    item.review_count = aggregate.count
    item.average_rating = aggregate.average
    with storage_errors(item_id):
        db.flush()
    return item


class AggregateWriter(ABC):
    """
    Recomputes an item's aggregate and stores it, serialized per item by the
    database. `recompute` may return None when the value is only produced by
    `store` itself.
    """

    name = "base"

    @abstractmethod
    def recompute(self, db: Session, item_id: int) -> Optional[AggregateResult]:
        """Read what the new aggregate should be, taking any lock the writer needs."""

    @abstractmethod
    def store(self, db: Session, item_id: int, aggregate: Optional[AggregateResult]) -> AggregateResult:
        """Write the aggregate onto the item row and return what was stored."""

    def write(self, db: Session, item_id: int) -> AggregateResult:
        aggregate = self.store(db, item_id, self.recompute(db, item_id))
        logger.debug(
            "aggregate written",
            extra={"event": "aggregate_written", "writer": self.name, "item_id": item_id,
                   "count": aggregate.count, "average": str(aggregate.average)},
        )
        return aggregate


class LockingWriter(AggregateWriter):
    """
    SELECT ... FOR UPDATE on the item row, recompute, update; all inside the
    caller's transaction. Concurrent writers for the same item queue on the
    row lock and each one recomputes after the previous one committed.
    """

    name = "lock"

    def recompute(self, db: Session, item_id: int) -> AggregateResult:
        if get_live_item(db, item_id, lock=True) is None:
            raise ItemNotFound(item_id)
        return compute(db, item_id)

    def store(self, db: Session, item_id: int, aggregate: Optional[AggregateResult]) -> AggregateResult:
        # the row locked by recompute is already in the identity map; no second SELECT
        item = db.get(Item, item_id)
        if item is None or item.is_deleted:
            raise ItemNotFound(item_id)
        apply(db, item_id, aggregate, item=item)
        return aggregate


class StatementWriter(AggregateWriter):
    """
    Single UPDATE whose SET clause recomputes count/average with correlated
    subqueries. Rounding is done by the database's ROUND().
    """

    name = "statement"

    def recompute(self, db: Session, item_id: int) -> None:
        return None

    def store(self, db: Session, item_id: int, aggregate: Optional[AggregateResult] = None) -> AggregateResult:
        count_q = (
            select(func.count(Review.id))
            .where(Review.item_id == Item.id, Review.deleted_at.is_(None))
            .correlate(Item)
            .scalar_subquery()
        )
        avg_q = (
            select(func.coalesce(func.round(func.avg(cast(Review.rating, Numeric(10, 4))), RATING_SCALE), 0))
            .where(Review.item_id == Item.id, Review.deleted_at.is_(None))
            .correlate(Item)
            .scalar_subquery()
        )
        stmt = (
            update(Item)
            .where(Item.id == item_id, Item.deleted_at.is_(None))
            .values(review_count=count_q, average_rating=avg_q)
            .execution_options(synchronize_session=False)
        )

        with storage_errors(item_id):
            res = db.execute(stmt)
            if res.rowcount == 0:
                raise ItemNotFound(item_id)
            item = db.get(Item, item_id, populate_existing=True)

        return AggregateResult(
            count=int(item.review_count),
            average=Decimal(item.average_rating).quantize(Decimal(1).scaleb(-RATING_SCALE)),
        )


WRITERS: Dict[str, AggregateWriter] = {
    LockingWriter.name: LockingWriter(),
    StatementWriter.name: StatementWriter(),
}


def get_writer(name: Optional[str] = None) -> AggregateWriter:
    key = (name or AGGREGATE_WRITER).lower()
    try:
        return WRITERS[key]
    except KeyError:
        raise ValueError(f"Unknown aggregate writer {key!r}; expected one of {sorted(WRITERS)}") from None
