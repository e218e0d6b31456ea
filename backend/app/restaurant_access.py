from typing import Optional


# Identity used by the scheduler and other unattended runs.
SYSTEM_CALLER_ID = "system"

UNAUTHORIZED_MESSAGE = "Unauthorized: user does not have access to this restaurant"


class SyncUnauthorized(PermissionError):
    def __init__(self, message: str = UNAUTHORIZED_MESSAGE):
        super().__init__(message)


def is_system_caller(caller_id: Optional[str]) -> bool:
    return caller_id == SYSTEM_CALLER_ID


def has_restaurant_access(cur, caller_id: Optional[str], restaurant_id: str) -> bool:
    if is_system_caller(caller_id):
        return True
    if not caller_id:
        return False
    cur.execute(
        """
        SELECT 1
        FROM user_restaurants
        WHERE user_id = %s
          AND restaurant_id = %s
        LIMIT 1
        """,
        (caller_id, restaurant_id),
    )
    return cur.fetchone() is not None


def assert_restaurant_access(cur, caller_id: Optional[str], restaurant_id: str):
    if not has_restaurant_access(cur, caller_id, restaurant_id):
        raise SyncUnauthorized()
