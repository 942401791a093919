#!/usr/bin/env python
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text


EXPECTED_HEAD = "0001_initial"
REQUIRED_TABLES = (
    "departments",
    "employees",
    "office_locations",
    "holidays",
    "global_settings",
    "department_settings",
    "attendance_records",
    "leave_requests",
    "wfh_requests",
    "regularization_requests",
    "recompute_jobs",
    "audit_logs",
)


def load_env_if_exists() -> None:
    env_file = Path(".env")
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def run() -> dict:
    load_env_if_exists()
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not found (.env or env vars).")

    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing else "ok", {"missing": missing})
        if missing:
            return report

        global_rows = conn.execute(text("select count(*) from global_settings")).scalar_one()
        add("global_settings_configured", "ok" if global_rows == 1 else "fail", {"rows": global_rows})

        failed_jobs = conn.execute(
            text(
                """
                select id, request_kind, request_id, attempts
                from recompute_jobs
                where status = 'FAILED'
                order by id desc
                limit 20
                """
            )
        ).fetchall()
        add(
            "failed_recompute_jobs",
            "warn" if failed_jobs else "ok",
            {"rows": [[str(value) for value in row] for row in failed_jobs]},
        )

        orphan_records = conn.execute(
            text(
                """
                select a.id
                from attendance_records a
                left join employees e on e.id = a.employee_id
                where e.id is null
                limit 20
                """
            )
        ).fetchall()
        add(
            "attendance_orphan_employee",
            "fail" if orphan_records else "ok",
            {"sample_ids": [row[0] for row in orphan_records]},
        )

        checkout_before_checkin = conn.execute(
            text(
                """
                select id
                from attendance_records
                where check_out is not null
                  and check_in is not null
                  and check_out < check_in
                limit 20
                """
            )
        ).fetchall()
        add(
            "checkout_before_checkin",
            "fail" if checkout_before_checkin else "ok",
            {"sample_ids": [row[0] for row in checkout_before_checkin]},
        )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
