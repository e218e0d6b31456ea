import hashlib
import hmac
from typing import Optional


def hash_session_token(token: str) -> str:
    # Sessions are stored as a one-way hash so a DB leak doesn't immediately grant access.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_sync_key(presented: Optional[str], expected: Optional[str]) -> bool:
    # An unset key disables key-based (system) access entirely.
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
