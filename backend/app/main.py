"""
Team chat real-time backend entry point.

Serves the websocket endpoint that carries messaging, presence, typing and
call signaling, plus a health check.  CRUD routes live in a separate service.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from app.api import health
from app.api.deps import get_datastore, get_token_verifier
from app.config import settings
from app.datastore import SqlDatastore
from app.redis.client import close_redis, init_redis
from app.services.auth_service import TokenVerifier
from app.services.calls import call_registry
from app.websocket.handlers import socket_ws_handler
from app.websocket.manager import manager

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_redis()
    yield
    # In-memory realtime state lives exactly as long as the process serves.
    call_registry.clear()
    manager.clear()
    await close_redis()


app = FastAPI(
    title="teamchat-realtime",
    description="Real-time messaging, presence and call signaling",
    version="1.0.0",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
# allow_origins=["*"] cannot be combined with allow_credentials=True. When the
# wildcard is present (dev), switch to allow_origin_regex=".*" instead.
_cors_origins = [o for o in settings.CORS_ORIGINS if o != "*"]
_cors_regex = ".*" if len(_cors_origins) < len(settings.CORS_ORIGINS) else None

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_origin_regex=_cors_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------


@app.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    datastore: SqlDatastore = Depends(get_datastore),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> None:
    await socket_ws_handler(websocket, datastore, verifier)
