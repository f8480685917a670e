"""
ingest.py — Load the four CSV exports into DuckDB (raw layer) and join them
into denormalised session rows.

Idempotency: users/sessions use incremental INSERT WHERE NOT EXISTS; flights
and hotels are always full-replaced (trip-level reference tables keyed by
trip_id, fare corrections must propagate).
"""

import logging
from pathlib import Path
from typing import Optional

import duckdb
import polars as pl

from validate import detect_csv_duplicates, validate_csv

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
DB_PATH  = BASE_DIR / "warehouse.duckdb"

_TRUE_VALUES = ["true", "t", "1", "yes", "y"]

_SESSION_ROWS_SQL = """
    SELECT
        s.session_id,
        s.user_id,
        s.trip_id,
        s.session_start,
        s.session_end,
        s.flight_booked,
        s.hotel_booked,
        s.cancellation,
        s.flight_discount,
        s.hotel_discount,
        s.checked_bags,
        u.birthdate,
        u.married,
        u.has_children,
        f.base_fare_usd,
        f.flight_discount_amount,
        f.home_airport_lat,
        f.home_airport_lon,
        f.destination_airport_lat,
        f.destination_airport_lon,
        h.hotel_per_room_usd,
        h.hotel_discount_amount
    FROM raw_sessions s
    LEFT JOIN raw_users   u ON s.user_id = u.user_id
    LEFT JOIN raw_flights f ON s.trip_id = f.trip_id
    LEFT JOIN raw_hotels  h ON s.trip_id = h.trip_id
    ORDER BY s.user_id, s.session_start
"""


def _table_exists(con: duckdb.DuckDBPyConnection, name: str) -> bool:
    """Check if table exists in database."""
    row_count_query = con.execute(
        "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?", [name]
    ).fetchone()
    row_count = row_count_query[0] if row_count_query else 0
    return row_count > 0


def _incremental_insert(
    con: duckdb.DuckDBPyConnection, df: pl.DataFrame, pk: str, table: str
) -> int:
    """Insert rows from df whose pk doesn't exist in table. Returns new row count."""
    con.register("_staged", df)
    new_rows = con.execute(f"""
        SELECT COUNT(*) FROM _staged s
        WHERE NOT EXISTS (SELECT 1 FROM {table} r WHERE r.{pk} = s.{pk})
    """).fetchone()
    new_rows = new_rows[0] if new_rows else 0
    if new_rows > 0:
        con.execute(f"""
            INSERT INTO {table}
            SELECT s.* FROM _staged s
            WHERE NOT EXISTS (SELECT 1 FROM {table} r WHERE r.{pk} = s.{pk})
        """)
    con.unregister("_staged")
    return new_rows


def replace_table(con: duckdb.DuckDBPyConnection, name: str, df: pl.DataFrame) -> None:
    """Drop *name* if present and recreate it from *df*."""
    con.execute(f"DROP TABLE IF EXISTS {name}")
    con.register("_replacement", df)
    con.execute(f"CREATE TABLE {name} AS SELECT * FROM _replacement")
    con.unregister("_replacement")


def _parse_bool(name: str) -> pl.Expr:
    """String flag → Boolean; null stays null, anything unrecognised is False."""
    col = pl.col(name).str.strip_chars().str.to_lowercase()
    return (
        pl.when(col.is_null() | (col == ""))
        .then(None)
        .otherwise(col.is_in(_TRUE_VALUES))
        .alias(name)
    )


def _read_export(
    src: Path, required: set[str], pk: str, label: str
) -> pl.DataFrame:
    """Pre-flight check, read every column as text, warn on source duplicates."""
    issues = validate_csv(src, required_columns=required)
    if issues:
        for issue in issues:
            log.error(issue)
        raise ValueError(f"{src.name} failed pre-flight validation: {issues[0]}")

    total_rows, dup_count = detect_csv_duplicates(src, pk)
    if dup_count > 0:
        log.warning(
            f"[DuplicateCheck] {src.name}: {dup_count}/{total_rows} duplicate "
            f"{pk}s detected in source file — will be deduplicated during ingestion."
        )

    # Everything as Utf8 first; explicit casts below tolerate mixed encodings.
    df = pl.read_csv(src, infer_schema=False)
    log.info(f"{label} raw rows: {len(df)}")
    return df


def _drop_null_keys(df: pl.DataFrame, pk: str, label: str) -> pl.DataFrame:
    if df.schema[pk] == pl.Utf8:
        # Blank keys are as unusable as missing ones.
        df = df.with_columns(
            pl.when(pl.col(pk).str.strip_chars() == "").then(None).otherwise(pl.col(pk)).alias(pk)
        )
    bad = df[pk].is_null().sum()
    if bad:
        log.warning(f"Dropped {bad} {label} rows with unparseable {pk}")
        df = df.drop_nulls(subset=[pk])
    before = len(df)
    df = df.unique(subset=[pk], keep="first", maintain_order=True)
    log.info(f"{label}: removed {before - len(df)} source duplicates → {len(df)} unique")
    return df


def ingest_users(con: duckdb.DuckDBPyConnection, data_dir: Optional[Path] = None) -> int:
    """Load users.csv → raw_users. Returns new row count."""
    src = (data_dir or DATA_DIR) / "users.csv"
    df = _read_export(
        src, {"user_id", "birthdate", "married", "has_children"}, "user_id", "Users"
    )
    df = df.with_columns(pl.col("user_id").cast(pl.Int64, strict=False))
    df = _drop_null_keys(df, "user_id", "Users")

    df = df.select(
        pl.col("user_id"),
        pl.col("birthdate").str.strip_chars().str.slice(0, 10).str.to_date(strict=False),
        _parse_bool("married"),
        _parse_bool("has_children"),
    )

    if not _table_exists(con, "raw_users"):
        replace_table(con, "raw_users", df)
        log.info(f"✓ raw_users created ({len(df)} rows)")
        return len(df)

    new_rows = _incremental_insert(con, df, "user_id", "raw_users")
    log.info(f"✓ raw_users incremental: {new_rows} new rows")
    return new_rows


def ingest_sessions(con: duckdb.DuckDBPyConnection, data_dir: Optional[Path] = None) -> int:
    """Load sessions.csv → raw_sessions. Returns new row count."""
    src = (data_dir or DATA_DIR) / "sessions.csv"
    df = _read_export(
        src,
        {"session_id", "user_id", "session_start", "flight_booked", "hotel_booked"},
        "session_id",
        "Sessions",
    )
    # Optional columns in older exports default to null.
    for name in ("trip_id", "session_end", "cancellation", "flight_discount",
                 "hotel_discount", "checked_bags"):
        if name not in df.columns:
            df = df.with_columns(pl.lit(None, dtype=pl.Utf8).alias(name))

    df = df.with_columns(
        pl.col("session_id").str.strip_chars(),
        pl.col("user_id").cast(pl.Int64, strict=False),
    )
    df = _drop_null_keys(df, "session_id", "Sessions")

    bad_users = df["user_id"].is_null().sum()
    if bad_users:
        # Kept so the row-level DQ step can report them against their session_id.
        log.warning(f"[DQ] {bad_users} sessions have unparseable user_id")

    df = df.select(
        pl.col("session_id"),
        pl.col("user_id"),
        pl.when(pl.col("trip_id").str.strip_chars() == "")
        .then(None)
        .otherwise(pl.col("trip_id").str.strip_chars())
        .alias("trip_id"),
        pl.col("session_start").str.to_datetime(strict=False, time_unit="us"),
        pl.col("session_end").str.to_datetime(strict=False, time_unit="us"),
        _parse_bool("flight_booked"),
        _parse_bool("hotel_booked"),
        _parse_bool("cancellation"),
        _parse_bool("flight_discount"),
        _parse_bool("hotel_discount"),
        pl.col("checked_bags").cast(pl.Int64, strict=False),
    )

    if not _table_exists(con, "raw_sessions"):
        replace_table(con, "raw_sessions", df)
        log.info(f"✓ raw_sessions created ({len(df)} rows)")
        return len(df)

    new_rows = _incremental_insert(con, df, "session_id", "raw_sessions")
    log.info(f"✓ raw_sessions incremental: {new_rows} new rows")
    return new_rows


def ingest_flights(con: duckdb.DuckDBPyConnection, data_dir: Optional[Path] = None) -> int:
    """Load flights.csv → raw_flights. Always full-replace."""
    src = (data_dir or DATA_DIR) / "flights.csv"
    numeric = [
        "base_fare_usd", "flight_discount_amount",
        "home_airport_lat", "home_airport_lon",
        "destination_airport_lat", "destination_airport_lon",
    ]
    df = _read_export(src, {"trip_id", *numeric}, "trip_id", "Flights")
    df = df.with_columns(pl.col("trip_id").str.strip_chars())
    df = _drop_null_keys(df, "trip_id", "Flights")
    df = df.select(
        pl.col("trip_id"),
        *[pl.col(c).cast(pl.Float64, strict=False) for c in numeric],
    )

    replace_table(con, "raw_flights", df)
    log.info(f"✓ raw_flights replaced ({len(df)} rows)")
    return len(df)


def ingest_hotels(con: duckdb.DuckDBPyConnection, data_dir: Optional[Path] = None) -> int:
    """Load hotels.csv → raw_hotels. Always full-replace."""
    src = (data_dir or DATA_DIR) / "hotels.csv"
    numeric = ["hotel_per_room_usd", "hotel_discount_amount"]
    df = _read_export(src, {"trip_id", *numeric}, "trip_id", "Hotels")
    df = df.with_columns(pl.col("trip_id").str.strip_chars())
    df = _drop_null_keys(df, "trip_id", "Hotels")
    df = df.select(
        pl.col("trip_id"),
        *[pl.col(c).cast(pl.Float64, strict=False) for c in numeric],
    )

    replace_table(con, "raw_hotels", df)
    log.info(f"✓ raw_hotels replaced ({len(df)} rows)")
    return len(df)


def load_session_rows(con: duckdb.DuckDBPyConnection) -> pl.DataFrame:
    """
    Left-join sessions to users, flights and hotels.

    A trip_id with no flight/hotel record leaves those columns null, so the
    session still counts but contributes no fare or distance.
    """
    df = con.sql(_SESSION_ROWS_SQL).pl()
    log.info(f"Session rows loaded: {len(df)}")
    return df


def main(db_path: Optional[Path] = None, data_dir: Optional[Path] = None) -> dict:
    log.info("=== Ingestion starting ===")
    con = duckdb.connect(str(db_path or DB_PATH))
    try:
        new_users    = ingest_users(con, data_dir)
        new_sessions = ingest_sessions(con, data_dir)
        flights      = ingest_flights(con, data_dir)
        hotels       = ingest_hotels(con, data_dir)
        for t in ["raw_users", "raw_sessions", "raw_flights", "raw_hotels"]:
            row_count = con.execute(f"SELECT COUNT(*) FROM {t}").fetchone()
            row_count = row_count[0] if row_count else 0
            log.info(f"  {t}: {row_count} total rows")
        log.info("=== Ingestion complete ===")
        return {
            "new_users":    new_users,
            "new_sessions": new_sessions,
            "flights":      flights,
            "hotels":       hotels,
        }
    finally:
        con.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s")
    main()
