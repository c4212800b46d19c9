"""
Reconciliation: rebuild item aggregates straight from the review rows,
independently of any review event. Used by the maintenance endpoints, the
periodic sweep job and the post-migration backfill.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.item import Item
from app.models.review import Review
from app.services.aggregates import AggregateResult, AggregateWriter, get_writer, round_average, storage_errors
from app.services.exceptions import ItemNotFound, StorageUnavailable

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    updated: int = 0
    skipped: int = 0
    errors: List[Dict[str, object]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {"updated": self.updated, "skipped": self.skipped, "errors": self.errors}


@dataclass(frozen=True)
class DriftEntry:
    item_id: int
    stored: AggregateResult
    actual: AggregateResult

    def as_dict(self) -> Dict[str, object]:
        return {"item_id": self.item_id, "stored": self.stored.as_dict(), "actual": self.actual.as_dict()}


def recompute_one(db: Session, item_id: int, writer: Optional[AggregateWriter] = None) -> AggregateResult:
    """
    Recompute and commit one item's aggregate. Items without reviews are reset
    to {0, 0}. Raises ItemNotFound for missing or soft-deleted items.
    """
    writer = writer or get_writer()
    try:
        aggregate = writer.write(db, item_id)
        with storage_errors(item_id):
            db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(
        "aggregate recomputed",
        extra={"event": "aggregate_recomputed", "item_id": item_id,
               "count": aggregate.count, "average": str(aggregate.average)},
    )
    return aggregate


def _live_item_ids(db: Session) -> List[int]:
    with storage_errors():
        return list(db.execute(select(Item.id).where(Item.deleted_at.is_(None)).order_by(Item.id)).scalars())


def recompute_all(db: Session, writer: Optional[AggregateWriter] = None) -> ReconciliationReport:
    """
    Recompute every live item, each in its own transaction. One item's failure
    is recorded in the report and does not stop the sweep.
    """
    writer = writer or get_writer()
    report = ReconciliationReport()

    for item_id in _live_item_ids(db):
        try:
            writer.write(db, item_id)
            with storage_errors(item_id):
                db.commit()
        except ItemNotFound:
            # soft-deleted or removed after the id list was read
            db.rollback()
            report.skipped += 1
        except (StorageUnavailable, SQLAlchemyError) as e:
            db.rollback()
            report.errors.append({"item_id": item_id, "error": str(e)})
            logger.error(
                "recompute failed for item %s: %s", item_id, e,
                extra={"event": "aggregate_recompute_failed", "item_id": item_id},
            )
        else:
            report.updated += 1

    logger.info(
        "recompute sweep finished",
        extra={"event": "aggregate_sweep_finished", "updated": report.updated,
               "skipped": report.skipped, "errors": len(report.errors)},
    )
    return report


def find_drift(db: Session) -> List[DriftEntry]:
    """
    Read-only audit: live items whose stored aggregate differs from the one
    their review rows produce.
    """
    totals = (
        select(
            Review.item_id.label("item_id"),
            func.count(Review.id).label("cnt"),
            func.sum(Review.rating).label("total"),
        )
        .where(Review.deleted_at.is_(None))
        .group_by(Review.item_id)
        .subquery()
    )
    stmt = (
        select(Item.id, Item.review_count, Item.average_rating, totals.c.cnt, totals.c.total)
        .outerjoin(totals, totals.c.item_id == Item.id)
        .where(Item.deleted_at.is_(None))
        .order_by(Item.id)
    )

    with storage_errors():
        rows = db.execute(stmt).all()

    drifted: List[DriftEntry] = []
    for item_id, stored_count, stored_avg, cnt, total in rows:
        cnt = int(cnt or 0)
        actual = AggregateResult(count=cnt, average=round_average(total or 0, cnt))
        stored = AggregateResult(
            count=int(stored_count or 0),
            average=Decimal(str(stored_avg if stored_avg is not None else 0)),
        )
        if stored.count != actual.count or stored.average != actual.average:
            drifted.append(DriftEntry(item_id=item_id, stored=stored, actual=actual))
    return drifted
