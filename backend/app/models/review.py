from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import validates
from app.db import Base
from app.models.item import PK


class Review(Base):
    __tablename__ = "reviews"
    id = Column(PK, primary_key=True, autoincrement=True)
    item_id = Column(BigInteger, ForeignKey("items.id"), nullable=False)
    user_id = Column(Integer, nullable=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("ix_reviews_item_id", "item_id"),)

    @validates("item_id")
    def _item_id_is_fixed(self, key, value):
        if self.item_id is not None and value != self.item_id:
            raise ValueError(f"review {self.id} belongs to item {self.item_id} and cannot move to {value}")
        return value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
