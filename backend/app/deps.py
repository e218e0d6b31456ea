from fastapi import Header, HTTPException, Depends, Cookie
from .config import settings
from .db import get_conn
from .restaurant_access import SYSTEM_CALLER_ID
from .security import hash_session_token, verify_sync_key
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "pos_ledger_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, s.expires_at, s.is_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
            }


def get_sync_caller(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
    x_pos_sync_key: Optional[str] = Header(None, alias="X-Pos-Sync-Key"),
) -> str:
    """
    The scheduler authenticates with the shared sync key and acts as the system
    caller; everyone else is the session user and goes through the access check.
    """
    if x_pos_sync_key is not None:
        if verify_sync_key(x_pos_sync_key, settings.pos_sync_key):
            return SYSTEM_CALLER_ID
        raise HTTPException(status_code=401, detail="invalid sync key")
    session = get_session(authorization, cookie_token)
    return str(session["user_id"])


def require_system_caller(caller_id: str = Depends(get_sync_caller)) -> str:
    if caller_id != SYSTEM_CALLER_ID:
        raise HTTPException(status_code=403, detail="system caller required")
    return caller_id
