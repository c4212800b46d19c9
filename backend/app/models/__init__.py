from app.models.item import Item
from app.models.review import Review

__all__ = ["Item", "Review"]
