from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Integer, Numeric, Text, CheckConstraint
from app.db import Base

# sqlite only autoincrements INTEGER PRIMARY KEY
PK = BigInteger().with_variant(Integer, "sqlite")

# must match NUMERIC(3,2) in migrations/002_item_review_aggregates.sql
AVERAGE_PRECISION = 3
AVERAGE_SCALE = 2


class Item(Base):
    __tablename__ = "items"
    id = Column(PK, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    # written only by app.services.aggregates
    average_rating = Column(Numeric(AVERAGE_PRECISION, AVERAGE_SCALE), nullable=False, default=0, server_default="0")
    review_count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("review_count >= 0", name="ck_items_review_count"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
