#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from datetime import date, datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from attendance_engine.db import SessionLocal
from attendance_engine.logging_utils import setup_json_logging
from attendance_engine.services.approvals import retry_pending_recomputations
from attendance_engine.services.attendance_records import materialize_day
from attendance_engine.services.nightly import run_nightly_job
from attendance_engine.settings import get_settings


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Close due attendance days and drain the recompute queue.")
    parser.add_argument("--day", type=date.fromisoformat, help="Materialize this local day (YYYY-MM-DD) only.")
    parser.add_argument(
        "--skip-recompute",
        action="store_true",
        help="Do not retry pending recomputation jobs.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-close yesterday even if it is already closed.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    setup_json_logging(get_settings().log_level)
    args = _parse_args(argv)
    now_utc = datetime.now(timezone.utc)
    report: dict = {"generated_at_utc": now_utc.isoformat()}

    with SessionLocal() as db:
        if not args.skip_recompute:
            jobs = retry_pending_recomputations(now_utc=now_utc, db=db)
            report["recompute_jobs"] = [
                {"id": job.id, "status": job.status, "attempts": job.attempts} for job in jobs
            ]
        if args.day is not None:
            report["materialized"] = materialize_day(db, args.day, now_utc=now_utc)
        else:
            report["nightly"] = run_nightly_job(now_utc=now_utc, db=db, force=args.force)

    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
