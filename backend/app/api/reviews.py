from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.review import Review
from app.services.aggregates import RATING_MAX, RATING_MIN, get_live_item
from app.services.exceptions import ItemNotFound, ReviewNotFound
from app.services.reviews import ReviewRepository, ReviewWriteResult

router = APIRouter(tags=["reviews"])


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=RATING_MIN, le=RATING_MAX)
    user_id: Optional[int] = None
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewPatch(BaseModel):
    rating: Optional[int] = Field(None, ge=RATING_MIN, le=RATING_MAX)
    comment: Optional[str] = Field(None, max_length=2000)


def get_repository(db: Session = Depends(get_db)) -> ReviewRepository:
    return ReviewRepository(db)


def review_out(review: Review) -> dict:
    return {
        "id": review.id,
        "item_id": review.item_id,
        "user_id": review.user_id,
        "rating": review.rating,
        "comment": review.comment,
        "created_at": review.created_at,
        "updated_at": review.updated_at,
    }


def write_out(repo: ReviewRepository, result: ReviewWriteResult) -> dict:
    """Review plus the parent's aggregate as stored after the write."""
    body = review_out(result.review)
    item = get_live_item(repo.db, result.review.item_id)
    body["item"] = {
        "id": result.review.item_id,
        "average_rating": item.average_rating if item else None,
        "review_count": item.review_count if item else None,
    }
    return body


@router.post("/items/{item_id}/reviews", status_code=201)
def create_review(item_id: int, body: ReviewIn, repo: ReviewRepository = Depends(get_repository)):
    try:
        result = repo.create(item_id, body.rating, user_id=body.user_id, comment=body.comment)
    except ItemNotFound as e:
        raise HTTPException(404, detail=str(e))
    return write_out(repo, result)


@router.get("/items/{item_id}/reviews")
def list_reviews(
    item_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    repo: ReviewRepository = Depends(get_repository),
):
    if get_live_item(repo.db, item_id) is None:
        raise HTTPException(404, detail=f"Item {item_id} not found")
    return [review_out(r) for r in repo.list_for_item(item_id, limit=limit, offset=offset)]


@router.put("/reviews/{review_id}")
def update_review(review_id: int, body: ReviewPatch, repo: ReviewRepository = Depends(get_repository)):
    try:
        result = repo.update(review_id, rating=body.rating, comment=body.comment)
    except ReviewNotFound as e:
        raise HTTPException(404, detail=str(e))
    return write_out(repo, result)


@router.delete("/reviews/{review_id}")
def delete_review(review_id: int, hard: bool = False, repo: ReviewRepository = Depends(get_repository)):
    try:
        result = repo.delete(review_id, hard=hard)
    except ReviewNotFound as e:
        raise HTTPException(404, detail=str(e))
    return {"deleted": review_id, "hard": hard, "item": write_out(repo, result)["item"]}
