from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.item import Item
from app.services.exceptions import ItemNotFound
from app.services.items import create_item, get_item, list_items, soft_delete_item
from app.services.reconciliation import recompute_one

router = APIRouter(prefix="/items", tags=["items"])


class ItemIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


def item_out(item: Item) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "average_rating": item.average_rating,
        "review_count": item.review_count,
    }


@router.get("")
def list_all(q: str | None = None, limit: int = 20, offset: int = 0, db: Session = Depends(get_db)):
    return [item_out(i) for i in list_items(db, q=q, limit=limit, offset=offset)]


@router.post("", status_code=201)
def create(body: ItemIn, db: Session = Depends(get_db)):
    return item_out(create_item(db, body.name))


@router.get("/{item_id}")
def read(item_id: int, db: Session = Depends(get_db)):
    try:
        return item_out(get_item(db, item_id))
    except ItemNotFound as e:
        raise HTTPException(404, detail=str(e))


@router.delete("/{item_id}", status_code=204)
def delete(item_id: int, db: Session = Depends(get_db)):
    try:
        soft_delete_item(db, item_id)
    except ItemNotFound as e:
        raise HTTPException(404, detail=str(e))


@router.post("/{item_id}/recompute-average")
def recompute_average(item_id: int, db: Session = Depends(get_db)):
    """
    Rebuild one item's {count, average} from its reviews.
    """
    try:
        aggregate = recompute_one(db, item_id)
    except ItemNotFound as e:
        raise HTTPException(404, detail=str(e))
    return {"item_id": item_id, **aggregate.as_dict()}
