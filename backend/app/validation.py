from __future__ import annotations

from typing import Annotated

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# POS system tags are part of the ledger natural key (`unified_sales.pos_system`).
# Keep a tight, safe character set so tags are stable identifiers.
PosSystem = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]
