import uuid

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from backend.app import deps
from backend.app.main import app
from backend.app.restaurant_access import SYSTEM_CALLER_ID, SyncUnauthorized
from backend.app.routers import pos_sync as pos_sync_router
from backend.workers.pos_ledger_sync import SyncResult


RID = uuid.UUID("11111111-1111-1111-1111-111111111111")


class _DummyConn:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def _patch_db(monkeypatch):
    conn = _DummyConn()
    monkeypatch.setattr(pos_sync_router, "get_conn", lambda: conn)
    monkeypatch.setattr(pos_sync_router, "set_restaurant_context", lambda *_args, **_kwargs: None)
    return conn


def test_sync_endpoint_returns_counts(monkeypatch):
    conn = _patch_db(monkeypatch)
    seen = {}

    def _fake_sync_restaurant(c, restaurant_id, *, caller_id, window, pos_system):
        seen.update(conn=c, restaurant_id=restaurant_id, caller_id=caller_id, window=window, pos_system=pos_system)
        res = SyncResult(restaurant_id=restaurant_id, pos_system=pos_system, window=window)
        res.deleted = 2
        res.written = 5
        res.categorized = {"applied": 3, "total": 4, "failed": 1}
        return res

    monkeypatch.setattr(pos_sync_router.pos_ledger_sync, "sync_restaurant", _fake_sync_restaurant)

    body = pos_sync_router.PosSyncIn(start_date="2026-02-01", end_date="2026-02-28", pos_system="Toast")
    out = pos_sync_router.sync_restaurant_sales(restaurant_id=RID, data=body, caller_id="user-1")

    assert out["synced"] == 7
    assert out["deleted"] == 2
    assert out["written"] == 5
    assert out["categorized"] == 3
    assert out["mode"] == "range"
    assert out["window"] == {"mode": "range", "start": "2026-02-01", "end": "2026-02-28"}
    assert seen["conn"] is conn
    assert seen["restaurant_id"] == str(RID)
    assert seen["caller_id"] == "user-1"
    assert seen["pos_system"] == "toast"


def test_sync_endpoint_without_body_is_full_history(monkeypatch):
    _patch_db(monkeypatch)
    monkeypatch.setattr(
        pos_sync_router.pos_ledger_sync,
        "sync_restaurant",
        lambda c, rid, *, caller_id, window, pos_system: SyncResult(restaurant_id=rid, pos_system=pos_system, window=window),
    )
    out = pos_sync_router.sync_restaurant_sales(restaurant_id=RID, data=None, caller_id=SYSTEM_CALLER_ID)
    assert out["mode"] == "full"
    assert out["synced"] == 0


def test_sync_endpoint_rejects_reversed_window_before_db(monkeypatch):
    def _no_conn():
        raise AssertionError("must not open a connection")

    monkeypatch.setattr(pos_sync_router, "get_conn", _no_conn)
    body = pos_sync_router.PosSyncIn(start_date="2026-02-28", end_date="2026-02-01")
    with pytest.raises(HTTPException) as exc:
        pos_sync_router.sync_restaurant_sales(restaurant_id=RID, data=body, caller_id="user-1")
    assert exc.value.status_code == 400


def test_sync_endpoint_maps_unauthorized_to_403(monkeypatch):
    _patch_db(monkeypatch)

    def _deny(*_args, **_kwargs):
        raise SyncUnauthorized()

    monkeypatch.setattr(pos_sync_router.pos_ledger_sync, "sync_restaurant", _deny)
    with pytest.raises(HTTPException) as exc:
        pos_sync_router.sync_restaurant_sales(restaurant_id=RID, data=None, caller_id="stranger")
    assert exc.value.status_code == 403
    assert exc.value.detail == "Unauthorized: user does not have access to this restaurant"


def test_sync_all_endpoint_reports_failures(monkeypatch):
    monkeypatch.setattr(
        pos_sync_router.pos_ledger_sync,
        "sync_all",
        lambda _db_url: [{"ok": True}, {"ok": False, "error": "boom"}],
    )
    out = pos_sync_router.sync_all_connections(_caller_id=SYSTEM_CALLER_ID)
    assert out["failed"] == 1
    assert len(out["results"]) == 2


def test_sync_key_identifies_system_caller(monkeypatch):
    monkeypatch.setattr(deps.settings, "pos_sync_key", "k-123")
    assert deps.get_sync_caller(authorization=None, cookie_token=None, x_pos_sync_key="k-123") == SYSTEM_CALLER_ID

    with pytest.raises(HTTPException) as exc:
        deps.get_sync_caller(authorization=None, cookie_token=None, x_pos_sync_key="wrong")
    assert exc.value.status_code == 401


def test_missing_credentials_is_401():
    with pytest.raises(HTTPException) as exc:
        deps.get_sync_caller(authorization=None, cookie_token=None, x_pos_sync_key=None)
    assert exc.value.status_code == 401


def test_sync_all_requires_system_caller():
    assert deps.require_system_caller(SYSTEM_CALLER_ID) == SYSTEM_CALLER_ID
    with pytest.raises(HTTPException) as exc:
        deps.require_system_caller("user-1")
    assert exc.value.status_code == 403


def test_http_surface_health_and_auth():
    client = TestClient(app)
    assert client.get("/health").json()["status"] == "ok"

    res = client.post(f"/pos-sync/restaurants/{RID}/sync", json={})
    assert res.status_code == 401
    assert res.headers.get("X-Request-Id")
