"""
Keeps an item's aggregate in step with its reviews.

The review repository calls every registered ReviewMutationObserver right after
it has flushed a create/update/delete, inside the same transaction. The
coordinator then moves through

    REVIEW_WRITTEN -> AGGREGATE_RECOMPUTED -> AGGREGATE_APPLIED -> DONE

inside a SAVEPOINT. Whatever goes wrong after REVIEW_WRITTEN only rolls the
savepoint back: the review stays, the item keeps its previous (now stale)
aggregate and the failure is logged for the reconciliation sweep to fix.
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from app.services.aggregates import AggregateResult, AggregateWriter, get_writer, storage_errors
from app.services.exceptions import ItemNotFound, StorageUnavailable

load_dotenv()

AGGREGATE_RETRIES = int(os.getenv("AGGREGATE_RETRIES", "1"))
AGGREGATE_RETRY_WAIT = float(os.getenv("AGGREGATE_RETRY_WAIT", "0.2"))

logger = logging.getLogger(__name__)


class MutationKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class Stage(str, Enum):
    REVIEW_WRITTEN = "review_written"
    AGGREGATE_RECOMPUTED = "aggregate_recomputed"
    AGGREGATE_APPLIED = "aggregate_applied"
    DONE = "done"


@dataclass(frozen=True)
class ReviewMutation:
    kind: MutationKind
    review_id: int
    item_id: int


@dataclass
class CoordinationOutcome:
    mutation: ReviewMutation
    stage: Stage = Stage.REVIEW_WRITTEN
    aggregate: Optional[AggregateResult] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.stage is Stage.DONE


class ReviewMutationObserver(ABC):
    @abstractmethod
    def review_mutated(self, db: Session, mutation: ReviewMutation) -> Optional[CoordinationOutcome]:
        """Called after a review row was written and flushed, before commit."""


class ConsistencyCoordinator(ReviewMutationObserver):
    def __init__(
        self,
        writer: Optional[AggregateWriter] = None,
        retries: int = AGGREGATE_RETRIES,
        retry_wait: float = AGGREGATE_RETRY_WAIT,
    ):
        self.writer = writer or get_writer()
        self.retries = max(0, retries)
        self.retry_wait = retry_wait

    def _step(self, db: Session, outcome: CoordinationOutcome) -> None:
        item_id = outcome.mutation.item_id
        outcome.stage = Stage.REVIEW_WRITTEN
        outcome.aggregate = None

        with storage_errors(item_id):
            with db.begin_nested():
                aggregate = self.writer.recompute(db, item_id)
                outcome.stage = Stage.AGGREGATE_RECOMPUTED
                aggregate = self.writer.store(db, item_id, aggregate)
                outcome.stage = Stage.AGGREGATE_APPLIED

        outcome.aggregate = aggregate
        outcome.stage = Stage.DONE

    def review_mutated(self, db: Session, mutation: ReviewMutation) -> CoordinationOutcome:
        outcome = CoordinationOutcome(mutation=mutation)
        log_extra = {
            "item_id": mutation.item_id,
            "review_id": mutation.review_id,
            "mutation": mutation.kind.value,
            "writer": self.writer.name,
        }

        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_fixed(self.retry_wait),
            retry=retry_if_exception_type(StorageUnavailable),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._step(db, outcome)
        except ItemNotFound as e:
            outcome.error = e
            logger.warning(
                "item gone before its aggregate could be written; skipping",
                extra={"event": "aggregate_item_not_found", **log_extra},
            )
        except StorageUnavailable as e:
            outcome.error = e
            logger.error(
                "aggregate left stale after %d attempt(s): %s",
                self.retries + 1, e,
                extra={"event": "aggregate_consistency_risk", "stage": outcome.stage.value, **log_extra},
            )
        except SQLAlchemyError as e:
            outcome.error = e
            logger.exception(
                "aggregate update failed",
                extra={"event": "aggregate_consistency_risk", "stage": outcome.stage.value, **log_extra},
            )
        else:
            logger.info(
                "aggregate updated",
                extra={"event": "aggregate_updated", "count": outcome.aggregate.count,
                       "average": str(outcome.aggregate.average), **log_extra},
            )
        return outcome
