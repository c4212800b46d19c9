"""
Bulk-load reviews from a CSV export, then rebuild every item's aggregate.

Rows are inserted without going through the per-review coordinator; a single
recompute sweep at the end brings review_count/average_rating in line.
"""
import os
import argparse
import logging
from typing import Dict, Tuple

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session
from app.db import SessionLocal
from app.models import Item, Review
from app.services.aggregates import RATING_MAX, RATING_MIN
from app.services.reconciliation import recompute_all

COL_MAP = {
    "Item": "item",
    "Restaurant": "item",
    "Recipe": "item",
    "Rating": "rating",
    "User Id": "user_id",
    "Comment": "comment",
    "Date": "created_at",
}

def read_reviews_csv(path: str) -> pd.DataFrame:
    encodings = ["utf-8", "utf-8-sig", "cp1252", "latin-1"]
    last_err = None
    for enc in encodings:
        try:
            return pd.read_csv(path, encoding=enc, engine="python")
        except UnicodeDecodeError as e:
            last_err = e
    raise RuntimeError(f"Failed to read CSV with encodings {encodings}: {last_err}")

def clean_frame(df: pd.DataFrame) -> Tuple[pd.DataFrame, int]:
    df = df.rename(columns=COL_MAP)
    missing = {"item", "rating"} - set(df.columns)
    if missing:
        raise ValueError(f"CSV is missing required columns: {sorted(missing)}")

    df["item"] = df["item"].fillna("").astype(str).str.strip()
    df["rating"] = pd.to_numeric(df["rating"], errors="coerce")
    if "created_at" in df.columns:
        df["created_at"] = pd.to_datetime(df["created_at"], errors="coerce")

    valid = (
        (df["item"] != "")
        & df["rating"].notna()
        & (df["rating"] % 1 == 0)
        & df["rating"].between(RATING_MIN, RATING_MAX)
    )
    return df[valid], int((~valid).sum())

def get_or_create_item(db: Session, name: str, cache: Dict[str, int]) -> int:
    if name in cache:
        return cache[name]
    existing = db.execute(
        select(Item.id).where(Item.name == name, Item.deleted_at.is_(None)).limit(1)
    ).scalar()
    if existing is None:
        item = Item(name=name, average_rating=0, review_count=0)
        db.add(item)
        db.flush()
        existing = item.id
    cache[name] = existing
    return existing

def load_csv(path: str, db: Session | None = None) -> Dict[str, int]:
    df, rejected = clean_frame(read_reviews_csv(path))

    own_session = db is None
    db = db or SessionLocal()
    inserted = 0
    try:
        items: Dict[str, int] = {}
        for _, r in df.iterrows():
            item_id = get_or_create_item(db, str(r["item"]), items)
            review = Review(
                item_id=item_id,
                rating=int(r["rating"]),
                user_id=int(r["user_id"]) if "user_id" in r and pd.notna(r["user_id"]) else None,
                comment=str(r["comment"]) if "comment" in r and pd.notna(r["comment"]) else None,
            )
            if "created_at" in r and pd.notna(r["created_at"]):
                review.created_at = r["created_at"].to_pydatetime()
            db.add(review)
            inserted += 1
        db.commit()

        report = recompute_all(db)
        print(
            f"Done. Reviews inserted {inserted}, rejected {rejected}, items touched {len(items)}; "
            f"aggregates updated {report.updated}, errors {len(report.errors)}."
        )
        return {
            "inserted": inserted,
            "rejected": rejected,
            "items": len(items),
            "updated": report.updated,
            "errors": len(report.errors),
        }
    finally:
        if own_session:
            db.close()

if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    parser = argparse.ArgumentParser()
    parser.add_argument("--csv", required=True, help="Path to a reviews CSV (Item/Restaurant/Recipe, Rating, ...)")
    args = parser.parse_args()
    load_csv(args.csv)
