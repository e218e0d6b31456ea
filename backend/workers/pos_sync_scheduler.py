#!/usr/bin/env python3
"""
Long-running POS sync scheduler.

Runs `sync_all` on an interval and owns the per-connection checkpoint: a successful
run advances `last_sync_time` to the time the pass started, a failed run records the
error and leaves the checkpoint where it was so the next pass retries the same window.
"""

import argparse
import json
import sys
import time
import traceback
from datetime import datetime, timezone
from typing import Optional

try:
    from .pos_ledger_sync import DB_URL_DEFAULT, connect, sync_all
except ImportError:  # pragma: no cover
    # Allow running as a script: `python3 backend/workers/pos_sync_scheduler.py`
    from pos_ledger_sync import DB_URL_DEFAULT, connect, sync_all


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def record_sync_success(cur, connection_id: str, synced_at: datetime):
    cur.execute(
        """
        UPDATE pos_connections
        SET last_sync_time = %s,
            initial_sync_done = true,
            connection_status = 'connected',
            last_error = NULL,
            last_error_at = NULL,
            updated_at = now()
        WHERE id = %s
        """,
        (synced_at, connection_id),
    )


def record_sync_error(cur, connection_id: str, error: str, failed_at: datetime):
    cur.execute(
        """
        UPDATE pos_connections
        SET connection_status = 'error',
            last_error = %s,
            last_error_at = %s,
            updated_at = now()
        WHERE id = %s
        """,
        ((error or "")[:2000], failed_at, connection_id),
    )


def run_once(db_url: str, now: Optional[datetime] = None) -> list[dict]:
    now = now or datetime.now(timezone.utc)
    results = sync_all(db_url, now=now)
    if not results:
        return results
    with connect(db_url) as conn:
        with conn.cursor() as cur:
            for r in results:
                if r["ok"]:
                    record_sync_success(cur, r["connection_id"], now)
                    _json_log(
                        "info",
                        "pos_sync_scheduler.checkpoint",
                        connection_id=r["connection_id"],
                        restaurant_id=r["restaurant_id"],
                        synced=r["synced"],
                        last_sync_time=now,
                    )
                else:
                    record_sync_error(cur, r["connection_id"], r.get("error") or "sync failed", now)
    return results


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--sleep", type=float, default=300.0, help="Seconds between passes")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    while True:
        try:
            results = run_once(args.db)
            _json_log(
                "info",
                "pos_sync_scheduler.pass",
                connections=len(results),
                failed=sum(1 for r in results if not r["ok"]),
            )
        except Exception as ex:
            # Never crash the loop; the next pass retries from the stored checkpoints.
            _json_log("error", "pos_sync_scheduler.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)

        if args.once:
            break
        time.sleep(args.sleep)


if __name__ == "__main__":
    main()
