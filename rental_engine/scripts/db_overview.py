#!/usr/bin/env python3
"""Database overview and integrity checks for the rental booking engine."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from rental_engine.db.base import Base
from rental_engine.db.factory import build_engine
from rental_engine.models import rental_models  # noqa: F401  registers tables on Base.metadata


EXPECTED_TABLES = [
    "Equipment",
    "RentalRequests",
    "AvailabilityReservations",
    "HandoverTokens",
    "NotificationQueue",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "RentalRequests": [
        "RentalRequestID",
        "RequestNumber",
        "EquipmentID",
        "FarmerID",
        "StartDate",
        "EndDate",
        "TotalAmount",
        "Status",
        "PickupToken",
        "ReturnToken",
    ],
    "AvailabilityReservations": ["ReservationID", "EquipmentID", "RentalRequestID", "StartDate", "EndDate", "IsActive"],
    "HandoverTokens": ["TokenID", "Token", "RentalRequestID", "Direction", "IssuedAt", "ConsumedAt", "RevokedAt"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if _table_exists(engine, "AvailabilityReservations"):
        overlapping = _scalar(
            engine,
            """
            SELECT COUNT(*)
            FROM AvailabilityReservations a
            JOIN AvailabilityReservations b
              ON a.EquipmentID = b.EquipmentID
             AND a.ReservationID < b.ReservationID
             AND a.StartDate <= b.EndDate
             AND b.StartDate <= a.EndDate
            WHERE a.IsActive = 1 AND b.IsActive = 1
            """,
        )
        checks.append(
            CheckResult(
                "reservations:overlapping_active",
                int(overlapping or 0) == 0,
                f"count={int(overlapping or 0)}",
            )
        )

    if _table_exists(engine, "AvailabilityReservations") and _table_exists(engine, "RentalRequests"):
        stale = _scalar(
            engine,
            """
            SELECT COUNT(*)
            FROM AvailabilityReservations r
            JOIN RentalRequests rr ON rr.RentalRequestID = r.RentalRequestID
            WHERE r.IsActive = 1 AND rr.Status NOT IN ('approved', 'active')
            """,
        )
        checks.append(
            CheckResult(
                "reservations:active_for_settled_request",
                int(stale or 0) == 0,
                f"count={int(stale or 0)}",
            )
        )

    if _table_exists(engine, "HandoverTokens"):
        live_tokens = _scalar(
            engine,
            """
            SELECT COUNT(*)
            FROM (
                SELECT RentalRequestID, Direction
                FROM HandoverTokens
                WHERE ConsumedAt IS NULL AND RevokedAt IS NULL
                GROUP BY RentalRequestID, Direction
                HAVING COUNT(*) > 1
            ) d
            """,
        )
        checks.append(
            CheckResult(
                "handovertokens:multiple_live_per_direction",
                int(live_tokens or 0) == 0,
                f"count={int(live_tokens or 0)}",
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "RentalRequests"):
        rows = _rows(
            engine,
            """
            SELECT RentalRequestID, RequestNumber, EquipmentID, Status, StartDate, EndDate
            FROM RentalRequests
            ORDER BY RentalRequestID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("RentalRequests (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if _table_exists(engine, "AuditLogs"):
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def run_checks(engine: Engine) -> list[CheckResult]:
    return _run_existence_checks(engine) + _run_column_checks(engine) + _run_integrity_checks(engine)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rental booking engine DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_ENGINE_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    parser.add_argument("--create", action="store_true", help="Create missing tables before checking.")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_ENGINE_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = build_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.create:
        Base.metadata.create_all(bind=engine)
        print("Tables created.")

    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    integrity = _run_integrity_checks(engine)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
