from __future__ import annotations
import argparse
import hashlib
import logging
import os
from pathlib import Path
from datetime import datetime

from dotenv import load_dotenv
from sqlalchemy import text, create_engine
from sqlalchemy.orm import sessionmaker

load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL")
assert DATABASE_URL, "DATABASE_URL not set"

MIGRATIONS_DIR = Path(__file__).with_name("migrations")
engine = create_engine(DATABASE_URL, future=True)

def sha256(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()

def ensure_schema_table(conn):
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
          id SERIAL PRIMARY KEY,
          filename TEXT NOT NULL UNIQUE,
          checksum TEXT NOT NULL,
          applied_at TIMESTAMP NOT NULL DEFAULT now()
        )
    """))

def applied_checksum(conn, filename: str) -> str | None:
    return conn.execute(
        text("SELECT checksum FROM schema_migrations WHERE filename = :f"),
        {"f": filename}
    ).scalar()

def record_applied(conn, filename: str, checksum: str):
    conn.execute(
        text("INSERT INTO schema_migrations (filename, checksum, applied_at) VALUES (:f, :c, :t)"),
        {"f": filename, "c": checksum, "t": datetime.utcnow()}
    )

def run() -> int:
    files = sorted(p for p in MIGRATIONS_DIR.glob("*.sql"))
    if not files:
        print("No migrations found.")
        return 0

    applied = 0
    with engine.begin() as conn:
        ensure_schema_table(conn)

        for f in files:
            filename = f.name
            sql = f.read_text()
            previous = applied_checksum(conn, filename)
            if previous is not None:
                if previous != sha256(sql):
                    print(f"Warning: {filename} changed since it was applied")
                print(f"Skip {filename} (already applied)")
                continue

            conn.execute(text(sql))
            record_applied(conn, filename, sha256(sql))
            applied += 1
            print(f"Applied {filename}")

    print("All migrations up to date.")
    return applied

def backfill():
    """Fill review_count/average_rating for every item after the aggregate columns were added."""
    from app.services.reconciliation import recompute_all

    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    with Session() as db:
        report = recompute_all(db)
    print(f"Backfill complete — updated: {report.updated}, skipped: {report.skipped}, errors: {len(report.errors)}")
    return report

if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    ap = argparse.ArgumentParser()
    ap.add_argument("--backfill", action="store_true", help="Recompute all item aggregates after migrating")
    args = ap.parse_args()
    run()
    if args.backfill:
        backfill()
