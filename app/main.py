import logging

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.api.endpoints import automation, change_control
from app.db import create_all, get_session
from app.settings import settings

logger = logging.getLogger(__name__)

app = FastAPI(title="ZYRA Change Control")

app.include_router(change_control.router, prefix="/api/autonomous-actions", tags=["Autonomous Actions"])
app.include_router(change_control.approvals_router, prefix="/api/pending-approvals", tags=["Pending Approvals"])
app.include_router(automation.router, prefix="/api/automation", tags=["Automation"])


@app.on_event("startup")
def on_startup() -> None:
    # Alembic is preferred; this is for local development
    if settings.db_auto_create_tables:
        create_all()
        logger.info("[Startup] Created tables from metadata")


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/db/ping")
def db_ping(session: Session = Depends(get_session)) -> dict:
    value = session.execute(text("SELECT 1")).scalar_one()
    return {"ok": value == 1}
