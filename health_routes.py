# health_routes.py
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from db import get_db

router = APIRouter(prefix="/api")

# filled in by the lifespan in main.py
STARTUP = {"db_ready": False, "startup_ok": False, "startup_error": ""}


@router.get("/health")
def health():
    return {"ok": True, "service": config.APP_NAME}


@router.get("/ready")
def ready(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_state = "up"
    except SQLAlchemyError:
        db_state = "down"
    return {
        "ok": db_state == "up",
        "db": db_state,
        "db_ready": STARTUP["db_ready"],
        "startup_ok": STARTUP["startup_ok"],
        # trace only outside production
        "startup_error": STARTUP["startup_error"][:4000] if config.DIAGNOSTIC_ERRORS else "",
        "providers": sorted(config.ENABLED_PROVIDERS),
        "time": datetime.utcnow().isoformat() + "Z",
    }
