from fastapi import Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.datastore import SqlDatastore
from app.services.auth_service import JwtTokenVerifier, TokenVerifier

_verifier = JwtTokenVerifier()


def get_datastore(db: Session = Depends(get_db)) -> SqlDatastore:
    """One datastore (and ORM session) per request / websocket connection."""
    return SqlDatastore(db)


def get_token_verifier() -> TokenVerifier:
    return _verifier
