"""
validate.py — Pre-flight file validators, row-level session checks and
post-scoring DQ checks.

check_session_rows() runs before aggregation: it reports malformed rows
without halting the batch. run_checks() runs after user_perks has been
written and returns hard failures separately from warnings.
"""

import csv
import sys
import logging
from pathlib import Path

import duckdb
import polars as pl

from metrics import RATIO_COLUMNS
from perks import PERK_LABELS

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
DB_PATH  = BASE_DIR / "warehouse.duckdb"

MIN_SESSIONS = 7              # fallbacks when running standalone without a config
MAX_SESSION_MINS = 240
MAX_ORPHAN_RATE = 0.05
MAX_PERK_SHARE = 0.9

_SAMPLE = 5  # ids quoted per issue message


class DataQualityError(Exception):
    """Raised for infrastructure failures during validation (DB errors, None results)."""


def check_encoding(path: Path) -> list[str]:
    """Return a non-empty error list if *path* is not valid UTF-8."""
    try:
        path.read_text(encoding="utf-8", errors="strict")
        return []
    except UnicodeDecodeError as exc:
        return [f"[EncodingCheck] '{path.name}' non-UTF-8 at byte {exc.start}: {exc.reason}"]
    except OSError as exc:
        return [f"[EncodingCheck] Cannot read '{path.name}': {exc}"]


def validate_csv(path: Path, required_columns: set[str]) -> list[str]:
    """Pre-flight for one export: present, UTF-8, required header columns, at least one data row."""
    if not path.exists():
        return [f"[FileFormat] '{path.name}' not found at {path}"]
    issues = check_encoding(path)
    if issues:
        return issues
    try:
        with open(path, encoding="utf-8", newline="") as fh:
            reader = csv.reader(fh)
            header = set(next(reader, []))
            has_rows = next(reader, None) is not None
    except csv.Error as exc:
        return [f"[FileFormat] '{path.name}' read error: {exc}"]

    missing = required_columns - header
    if missing:
        issues.append(f"[FileFormat] '{path.name}' missing columns: {sorted(missing)}")
    if not has_rows:
        issues.append(f"[FileFormat] '{path.name}' has no data rows.")
    return issues


def detect_csv_duplicates(path: Path, pk_col: str) -> tuple[int, int]:
    """Return (total_rows, duplicate_key_count) for *pk_col*; blank keys count as one value."""
    try:
        counts = (
            pl.scan_csv(path, infer_schema=False)
            .select(
                pl.len().alias("total"),
                pl.col(pk_col).fill_null("").str.strip_chars().n_unique().alias("unique"),
            )
            .collect()
        )
    except (OSError, pl.exceptions.PolarsError) as exc:
        log.warning(f"[DuplicateCheck] Could not scan '{path.name}': {exc}")
        return 0, 0
    total, unique = counts.row(0)
    return total, total - unique


def warn_if_overwrite(path: Path, label: str = "") -> list[str]:
    """Return a warning message if *path* already exists."""
    if path.exists():
        tag = f" [{label}]" if label else ""
        return [f"[OutputPath]{tag} '{path.name}' already exists and will be overwritten."]
    return []


def _table_exists(con: duckdb.DuckDBPyConnection, name: str) -> bool:
    """Return True if *name* exists as a table in the connected DuckDB schema."""
    row = con.execute(
        "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?", [name]
    ).fetchone()
    return bool(row and row[0])


def _count(con: duckdb.DuckDBPyConnection, sql: str, check: str, params=None) -> int:
    """Run a COUNT(*) query for one output check; DuckDB errors and empty results become DataQualityError."""
    try:
        row = con.execute(sql, params or []).fetchone()
    except duckdb.Error as e:
        raise DataQualityError(f"[{check}] DuckDB error: {e}") from e
    if row is None or row[0] is None:
        raise DataQualityError(f"[{check}] empty result")
    return row[0]


def _sample_ids(rows: pl.DataFrame) -> str:
    ids = rows["session_id"].head(_SAMPLE).to_list()
    more = "" if len(rows) <= _SAMPLE else f" (+{len(rows) - _SAMPLE} more)"
    return f"{ids}{more}"


def check_session_rows(
    rows: pl.DataFrame, config=None
) -> tuple[pl.DataFrame, list[str]]:
    """
    Row-level checks on denormalised session rows. Returns (clean_rows, issues).

    Rows that cannot be aggregated at all (no user_id or session_start) are
    quarantined. A session_end before session_start is nulled so the row still
    counts towards eligibility but not towards mean_session_time. Everything
    else is reported and left as is.
    """
    max_session_mins = config.dq_max_session_minutes if config else MAX_SESSION_MINS
    max_orphan_rate  = config.dq_max_orphan_rate if config else MAX_ORPHAN_RATE
    issues: list[str] = []

    # R1. unusable rows
    unusable = rows.filter(pl.col("user_id").is_null() | pl.col("session_start").is_null())
    if len(unusable) > 0:
        issues.append(
            f"WARN [Row 1]: {len(unusable)} sessions quarantined with null user_id or "
            f"session_start: {_sample_ids(unusable)}"
        )
        rows = rows.filter(pl.col("user_id").is_not_null() & pl.col("session_start").is_not_null())
    else:
        log.info("PASS [Row 1]: Every session has user_id and session_start")

    # R2. negative durations
    negative = pl.col("session_end") < pl.col("session_start")
    bad = rows.filter(negative)
    if len(bad) > 0:
        issues.append(
            f"WARN [Row 2]: {len(bad)} sessions end before they start — "
            f"session_end ignored: {_sample_ids(bad)}"
        )
        rows = rows.with_columns(
            pl.when(negative).then(None).otherwise(pl.col("session_end")).alias("session_end")
        )
    else:
        log.info("PASS [Row 2]: No negative session durations")

    # R3. session length outliers
    too_long = rows.filter(
        (pl.col("session_end") - pl.col("session_start")).dt.total_minutes() > max_session_mins
    )
    if len(too_long) > 0:
        issues.append(
            f"WARN [Row 3]: {len(too_long)} sessions exceed {max_session_mins} min — "
            f"likely clock drift: {_sample_ids(too_long)}"
        )
    else:
        log.info(f"PASS [Row 3]: No sessions exceed {max_session_mins} min")

    # R4. discount fractions must be within [0, 1]
    for col in ("flight_discount_amount", "hotel_discount_amount"):
        out_of_range = rows.filter((pl.col(col) < 0) | (pl.col(col) > 1))
        if len(out_of_range) > 0:
            issues.append(
                f"WARN [Row 4]: {len(out_of_range)} sessions have {col} outside [0, 1]: "
                f"{_sample_ids(out_of_range)}"
            )

    # R5. negative bag counts
    negative_bags = rows.filter(pl.col("checked_bags") < 0)
    if len(negative_bags) > 0:
        issues.append(
            f"WARN [Row 5]: {len(negative_bags)} sessions have negative checked_bags: "
            f"{_sample_ids(negative_bags)}"
        )

    # R6. booked flights whose trip_id matched no flight record
    booked = rows.filter(pl.col("flight_booked").fill_null(False))
    if len(booked) > 0:
        orphans = booked.filter(
            pl.col("base_fare_usd").is_null() & pl.col("destination_airport_lat").is_null()
        )
        orphan_rate = len(orphans) / len(booked)
        if orphan_rate > max_orphan_rate:
            issues.append(
                f"WARN [Row 6]: {len(orphans)}/{len(booked)} booked flights "
                f"({orphan_rate:.1%}) have no flight record. Threshold is "
                f"{max_orphan_rate:.0%}. Check the trip_id join."
            )
        else:
            log.info(
                f"PASS [Row 6]: Flight orphan rate {orphan_rate:.1%} within "
                f"threshold ({max_orphan_rate:.0%})"
            )
    else:
        log.info("SKIP [Row 6]: No booked flights — no orphan check needed.")

    for issue in issues:
        log.warning(issue)
    return rows, issues


def run_checks(con: duckdb.DuckDBPyConnection, config=None) -> tuple[list[str], list[str]]:
    """Run all DQ checks on user_perks. Returns (failures, warnings)."""
    min_sessions   = config.min_sessions if config else MIN_SESSIONS
    max_perk_share = config.dq_max_perk_share if config else MAX_PERK_SHARE
    failures = []
    warnings = []

    try:
        if not _table_exists(con, "user_perks"):
            raise DataQualityError("user_perks has not been materialised")

        # Hard checks: (tag, COUNT(*) query, params, failure message, pass message)
        placeholders = ", ".join("?" for _ in PERK_LABELS)
        hard_checks = [
            ("Check 1",
             "SELECT COUNT(*) - COUNT(DISTINCT user_id) FROM user_perks", None,
             "{n} duplicate user rows in user_perks.",
             "One row per user"),
            ("Check 2",
             "SELECT COUNT(*) FROM user_perks WHERE session_count <= ?", [min_sessions],
             f"{{n}} users scored with <= {min_sessions} sessions.",
             f"All users have > {min_sessions} sessions"),
            ("Check 3",
             f"SELECT COUNT(*) FROM user_perks WHERE perk IS NULL OR perk NOT IN ({placeholders})",
             list(PERK_LABELS),
             "{n} users have a missing or unknown perk.",
             "Every user has a known perk"),
        ]
        for tag, sql, params, fail_msg, pass_msg in hard_checks:
            n = _count(con, sql, tag, params)
            if n > 0:
                failures.append(f"FAIL [{tag}]: " + fail_msg.format(n=n))
            else:
                log.info(f"PASS [{tag}]: {pass_msg}")

        # 4. ratio bounds — warn only
        out_of_range = {
            col: _count(con, f"SELECT COUNT(*) FROM user_perks WHERE {col} < 0 OR {col} > 1", "Check 4")
            for col in RATIO_COLUMNS
        }
        for col, n in out_of_range.items():
            if n > 0:
                warnings.append(f"WARN [Check 4]: {n} users have {col} outside [0, 1].")
        if not any(out_of_range.values()):
            log.info("PASS [Check 4]: All ratio metrics within [0, 1]")

        # 5. a single dominant perk usually means a threshold typo in config.yaml
        top = con.execute("""
            SELECT perk, COUNT(*) / SUM(COUNT(*)) OVER () AS share
            FROM user_perks GROUP BY perk ORDER BY share DESC LIMIT 1
        """).fetchone()
        if top is None:
            log.info("SKIP [Check 5]: user_perks is empty")
        elif top[1] > max_perk_share:
            warnings.append(
                f"WARN [Check 5]: '{top[0]}' covers {top[1]:.1%} of users "
                f"(threshold {max_perk_share:.0%}). Check the perk thresholds."
            )
        else:
            log.info("PASS [Check 5]: No single perk dominates")

        for w in warnings:
            log.warning(w)
        return failures, warnings

    except duckdb.Error as e:
        raise DataQualityError(f"Database error: {e}") from e


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s")
    log.info("=== Data Quality Validation ===")
    con = None
    try:
        con = duckdb.connect(str(DB_PATH), read_only=True)
        failures, _ = run_checks(con)

        if failures:
            log.error("=" * 60)
            log.error("PIPELINE HALTED — Data quality checks failed:")
            for f in failures:
                log.error(f"  • {f}")
            log.error("=" * 60)
            sys.exit(1)
        else:
            log.info("=== All data quality checks passed ===")

    except DataQualityError as e:
        log.error(f"Data quality validation failed: {e}")
        sys.exit(2)
    finally:
        if con is not None:
            con.close()


if __name__ == "__main__":
    main()
