from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from datetime import date
from typing import Optional
import uuid

from ..config import settings
from ..db import get_conn, set_restaurant_context
from ..deps import get_sync_caller, require_system_caller
from ..restaurant_access import SyncUnauthorized
from ..sync_window import InvalidSyncWindow, resolve_sync_window
from ..validation import PosSystem
from ...workers import pos_ledger_sync

router = APIRouter(prefix="/pos-sync", tags=["pos-sync"])


class PosSyncIn(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    pos_system: PosSystem = pos_ledger_sync.DEFAULT_POS_SYSTEM


@router.post("/restaurants/{restaurant_id}/sync")
def sync_restaurant_sales(
    restaurant_id: uuid.UUID,
    data: Optional[PosSyncIn] = None,
    caller_id: str = Depends(get_sync_caller),
):
    """
    On-demand reconciliation. No dates means full history; both dates reconcile
    that inclusive range only.
    """
    data = data or PosSyncIn()
    try:
        window = resolve_sync_window(data.start_date, data.end_date)
    except InvalidSyncWindow as ex:
        raise HTTPException(status_code=400, detail=str(ex))

    with get_conn() as conn:
        set_restaurant_context(conn, str(restaurant_id))
        try:
            result = pos_ledger_sync.sync_restaurant(
                conn,
                str(restaurant_id),
                caller_id=caller_id,
                window=window,
                pos_system=data.pos_system,
            )
        except SyncUnauthorized as ex:
            raise HTTPException(status_code=403, detail=str(ex))

    return {
        "synced": result.synced,
        "deleted": result.deleted,
        "written": result.written,
        "categorized": result.categorized.get("applied", 0),
        "mode": window.mode,
        "window": window.as_dict(),
    }


@router.post("/sync-all")
def sync_all_connections(_caller_id: str = Depends(require_system_caller)):
    results = pos_ledger_sync.sync_all(settings.db_url)
    return {
        "results": results,
        "failed": sum(1 for r in results if not r["ok"]),
    }
