from __future__ import annotations


class AggregateError(Exception):
    """Base class for rating aggregate failures."""


class ItemNotFound(AggregateError):
    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Item {item_id} not found")


class ReviewNotFound(AggregateError):
    def __init__(self, review_id: int):
        self.review_id = review_id
        super().__init__(f"Review {review_id} not found")


class StorageUnavailable(AggregateError):
    """The review/item store could not be reached or timed out."""

    def __init__(self, message: str, *, item_id: int | None = None):
        self.item_id = item_id
        super().__init__(message)
