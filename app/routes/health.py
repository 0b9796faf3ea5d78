from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.engine import Engine
from sqlmodel import Session, text

from app.database import get_engine

router = APIRouter()


@router.get("/check")
def health_check(engine: Engine = Depends(get_engine)):
    db_status = "ok"

    try:
        # simple DB ping
        with Session(engine) as session:
            session.exec(text("SELECT 1"))
    except Exception:
        db_status = "failed"

    return {
        "status": "ok",
        "database": db_status,
        "timestamp": datetime.utcnow().isoformat()
    }
