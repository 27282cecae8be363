from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import get_db
from app.redis.client import get_redis
from app.services.calls import call_registry
from app.websocket.manager import manager

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db: Session = Depends(get_db)) -> dict:
    realtime = {
        "online_users": len(manager.registry.online_user_ids()),
        "rooms": manager.rooms.room_count(),
        "live_calls": len(call_registry),
        "presence_cache": "enabled" if get_redis() is not None else "disabled",
    }
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return {"status": "unhealthy", "database": "disconnected", "error": str(exc), "realtime": realtime}
    return {"status": "healthy", "database": "connected", "realtime": realtime}
