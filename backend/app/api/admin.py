from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.services.reconciliation import find_drift, recompute_all

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/recompute-all-averages")
def recompute_all_averages(db: Session = Depends(get_db)):
    return recompute_all(db).as_dict()


@router.get("/aggregate-drift")
def aggregate_drift(db: Session = Depends(get_db)):
    """
    Items whose stored {count, average} no longer matches their reviews.
    Read only; run /admin/recompute-all-averages to heal them.
    """
    drifted = find_drift(db)
    return {"drifted": len(drifted), "items": [d.as_dict() for d in drifted]}
