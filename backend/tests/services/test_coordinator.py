import logging
from decimal import Decimal

import pytest

from app.models import Item, Review
from app.services.aggregates import AggregateWriter, LockingWriter, StatementWriter
from app.services.coordinator import (
    ConsistencyCoordinator,
    MutationKind,
    ReviewMutation,
    ReviewMutationObserver,
    Stage,
)
from app.services.exceptions import ItemNotFound, StorageUnavailable
from app.services.reviews import ReviewRepository


def stored(db, item_id):
    item = db.get(Item, item_id, populate_existing=True)
    return item.review_count, item.average_rating


class UnavailableWriter(LockingWriter):
    name = "unavailable"

    def __init__(self, failures=None):
        self.calls = 0
        self.failures = failures  # None: fail every time

    def recompute(self, db, item_id):
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            raise StorageUnavailable("connection refused", item_id=item_id)
        return super().recompute(db, item_id)


class FailsAfterApplyWriter(LockingWriter):
    name = "fails_after_apply"

    def store(self, db, item_id, aggregate):
        super().store(db, item_id, aggregate)
        raise StorageUnavailable("lost connection during write", item_id=item_id)


class VanishedItemWriter(AggregateWriter):
    name = "vanished"

    def recompute(self, db, item_id):
        raise ItemNotFound(item_id)

    def store(self, db, item_id, aggregate):
        raise AssertionError("store must not run when recompute failed")


class RecordingObserver(ReviewMutationObserver):
    def __init__(self):
        self.mutations = []

    def review_mutated(self, db, mutation):
        self.mutations.append(mutation)


def test_scenario_a_add_review_updates_average(db, make_item, repo):
    item = make_item(ratings=[5, 3, 4])
    assert stored(db, item.id) == (3, Decimal("4.00"))

    result = repo.create(item.id, 2)

    assert result.outcome.ok
    assert result.outcome.aggregate.count == 4
    assert result.outcome.aggregate.average == Decimal("3.50")
    assert stored(db, item.id) == (4, Decimal("3.50"))


def test_scenario_c_deleting_only_review_resets_to_zero(db, make_item, repo):
    item = make_item(ratings=[5])
    review_id = db.query(Review.id).filter(Review.item_id == item.id).scalar()

    repo.delete(review_id)

    assert stored(db, item.id) == (0, 0)


def test_update_changes_average(db, make_item, repo):
    item = make_item(ratings=[5])
    review = repo.create(item.id, 1).review
    assert stored(db, item.id) == (2, Decimal("3.00"))

    repo.update(review.id, rating=4)

    assert stored(db, item.id) == (2, Decimal("4.50"))


def test_stages_reach_done(db, make_item, coordinator):
    item = make_item()
    db.add(Review(item_id=item.id, rating=3))
    db.flush()

    outcome = coordinator.review_mutated(db, ReviewMutation(MutationKind.CREATED, 0, item.id))
    db.commit()

    assert outcome.stage is Stage.DONE
    assert outcome.error is None


@pytest.mark.parametrize("writer", [LockingWriter(), StatementWriter()], ids=lambda w: w.name)
def test_duplicate_delivery_is_idempotent(db, make_item, writer):
    coordinator = ConsistencyCoordinator(writer=writer, retries=0, retry_wait=0)
    repo = ReviewRepository(db, observers=[coordinator])
    item = make_item()
    result = repo.create(item.id, 4)
    repo.create(item.id, 5)
    first = stored(db, item.id)

    mutation = ReviewMutation(MutationKind.CREATED, result.review.id, item.id)
    again = coordinator.review_mutated(db, mutation)
    db.commit()

    assert again.ok
    assert stored(db, item.id) == first == (2, Decimal("4.50"))


def test_storage_failure_keeps_review_and_leaves_aggregate_stale(db, make_item, caplog):
    item = make_item(ratings=[4])
    writer = UnavailableWriter()
    repo = ReviewRepository(db, observers=[ConsistencyCoordinator(writer=writer, retries=1, retry_wait=0)])

    with caplog.at_level(logging.ERROR, logger="app.services.coordinator"):
        result = repo.create(item.id, 1)

    assert writer.calls == 2  # first attempt + one retry
    assert result.outcome.stage is Stage.REVIEW_WRITTEN
    assert isinstance(result.outcome.error, StorageUnavailable)
    assert db.get(Review, result.review.id) is not None
    assert stored(db, item.id) == (1, Decimal("4.00"))
    assert any(getattr(r, "event", None) == "aggregate_consistency_risk" for r in caplog.records)


def test_storage_failure_recovers_on_retry(db, make_item):
    item = make_item(ratings=[4])
    writer = UnavailableWriter(failures=1)
    repo = ReviewRepository(db, observers=[ConsistencyCoordinator(writer=writer, retries=1, retry_wait=0)])

    result = repo.create(item.id, 2)

    assert writer.calls == 2
    assert result.outcome.ok
    assert stored(db, item.id) == (2, Decimal("3.00"))


def test_failure_after_apply_rolls_back_only_the_aggregate(db, make_item):
    item = make_item(ratings=[5, 5])
    repo = ReviewRepository(
        db, observers=[ConsistencyCoordinator(writer=FailsAfterApplyWriter(), retries=0, retry_wait=0)]
    )

    result = repo.create(item.id, 2)

    assert result.outcome.stage is Stage.AGGREGATE_RECOMPUTED
    assert result.outcome.aggregate is None
    assert db.get(Review, result.review.id, populate_existing=True).rating == 2
    assert stored(db, item.id) == (2, Decimal("5.00"))


def test_item_not_found_is_skipped(db, make_item, caplog):
    item = make_item()
    repo = ReviewRepository(db, observers=[ConsistencyCoordinator(writer=VanishedItemWriter(), retries=3, retry_wait=0)])

    with caplog.at_level(logging.WARNING, logger="app.services.coordinator"):
        result = repo.create(item.id, 3)

    assert isinstance(result.outcome.error, ItemNotFound)
    assert db.get(Review, result.review.id) is not None
    assert any(getattr(r, "event", None) == "aggregate_item_not_found" for r in caplog.records)


def test_every_observer_is_notified(db, make_item, coordinator):
    recorder = RecordingObserver()
    repo = ReviewRepository(db, observers=[coordinator, recorder])
    item = make_item()

    review = repo.create(item.id, 3).review
    repo.update(review.id, rating=4)
    repo.delete(review.id, hard=True)

    assert [m.kind for m in recorder.mutations] == [
        MutationKind.CREATED, MutationKind.UPDATED, MutationKind.DELETED,
    ]
    assert {m.item_id for m in recorder.mutations} == {item.id}
    assert stored(db, item.id) == (0, 0)
