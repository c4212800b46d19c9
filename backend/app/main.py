import logging
import os

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from app.db import engine, get_db, Base
from app import models
from app.api.items import router as items_router
from app.api.reviews import router as reviews_router
from app.api.admin import router as admin_router
from app.services.exceptions import StorageUnavailable

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")

app = FastAPI(title="Ratings API")

# Create tables at startup (migrations in app/migrations are the source of truth for Postgres)
Base.metadata.create_all(bind=engine)

FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(items_router)
app.include_router(reviews_router)
app.include_router(admin_router)


@app.exception_handler(StorageUnavailable)
def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error("storage unavailable: %s", exc, extra={"event": "storage_unavailable", "path": request.url.path})
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/")
def root():
    return {"message": "Ratings API is up. Try /health or /db-ping or /docs."}

@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/db-ping")
def db_ping(db: Session = Depends(get_db)):
    db.execute(text("select 1")).scalar()
    return {"db": "ok", "dialect": engine.dialect.name}
