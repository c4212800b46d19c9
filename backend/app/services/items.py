from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.item import Item
from app.services.aggregates import get_live_item, storage_errors
from app.services.exceptions import ItemNotFound


def create_item(db: Session, name: str) -> Item:
    # aggregate columns start at their zero state and are never taken from callers
    item = Item(name=name.strip(), average_rating=0, review_count=0)
    db.add(item)
    with storage_errors():
        db.commit()
    return item


def get_item(db: Session, item_id: int) -> Item:
    item = get_live_item(db, item_id)
    if item is None:
        raise ItemNotFound(item_id)
    return item


def list_items(db: Session, q: Optional[str] = None, limit: int = 20, offset: int = 0) -> List[Item]:
    stmt = select(Item).where(Item.deleted_at.is_(None))
    if q:
        stmt = stmt.where(Item.name.ilike(f"%{q}%"))
    stmt = stmt.order_by(Item.id).limit(limit).offset(offset)
    with storage_errors():
        return list(db.execute(stmt).scalars())


def soft_delete_item(db: Session, item_id: int) -> Item:
    """Soft-deleted items keep their last aggregate; no writer touches them again."""
    item = get_item(db, item_id)
    item.deleted_at = datetime.utcnow()
    with storage_errors(item_id):
        db.commit()
    return item
