from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.review import Review
from app.services.aggregates import get_live_item, storage_errors
from app.services.coordinator import (
    CoordinationOutcome,
    ConsistencyCoordinator,
    MutationKind,
    ReviewMutation,
    ReviewMutationObserver,
)
from app.services.exceptions import ItemNotFound, ReviewNotFound


@dataclass
class ReviewWriteResult:
    review: Review
    outcome: Optional[CoordinationOutcome] = None


class ReviewRepository:
    """
    CRUD for reviews. Every successful create/update/delete is flushed, passed
    to the registered observers, then committed as one transaction.
    """

    def __init__(self, db: Session, observers: Optional[Iterable[ReviewMutationObserver]] = None):
        self.db = db
        self.observers: List[ReviewMutationObserver] = (
            list(observers) if observers is not None else [ConsistencyCoordinator()]
        )

    # Reads
    def get(self, review_id: int, *, include_deleted: bool = False) -> Review:
        with storage_errors():
            review = self.db.get(Review, review_id)
        if review is None or (review.is_deleted and not include_deleted):
            raise ReviewNotFound(review_id)
        return review

    def list_for_item(self, item_id: int, limit: int = 50, offset: int = 0) -> List[Review]:
        stmt = (
            select(Review)
            .where(Review.item_id == item_id, Review.deleted_at.is_(None))
            .order_by(Review.created_at.desc(), Review.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with storage_errors(item_id):
            return list(self.db.execute(stmt).scalars())

    # Writes
    def _notify(self, kind: MutationKind, review: Review) -> Optional[CoordinationOutcome]:
        mutation = ReviewMutation(kind=kind, review_id=review.id, item_id=review.item_id)
        outcome = None
        for observer in self.observers:
            result = observer.review_mutated(self.db, mutation)
            if isinstance(result, CoordinationOutcome):
                outcome = result
        return outcome

    def _finish(self, kind: MutationKind, review: Review) -> ReviewWriteResult:
        with storage_errors(review.item_id):
            self.db.flush()
        outcome = self._notify(kind, review)
        with storage_errors(review.item_id):
            self.db.commit()
        return ReviewWriteResult(review=review, outcome=outcome)

    def create(
        self,
        item_id: int,
        rating: int,
        *,
        user_id: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> ReviewWriteResult:
        if get_live_item(self.db, item_id) is None:
            raise ItemNotFound(item_id)
        review = Review(item_id=item_id, rating=rating, user_id=user_id, comment=comment)
        self.db.add(review)
        return self._finish(MutationKind.CREATED, review)

    def update(
        self,
        review_id: int,
        *,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> ReviewWriteResult:
        review = self.get(review_id)
        if rating is not None:
            review.rating = rating
        if comment is not None:
            review.comment = comment
        review.updated_at = datetime.utcnow()
        return self._finish(MutationKind.UPDATED, review)

    def delete(self, review_id: int, *, hard: bool = False) -> ReviewWriteResult:
        review = self.get(review_id)
        if hard:
            self.db.delete(review)
        else:
            review.deleted_at = datetime.utcnow()
        return self._finish(MutationKind.DELETED, review)
