"""utils.py — Shared pipeline utilities: null-safe arithmetic expressions and warehouse cleanup."""

import logging
import sys
from pathlib import Path

import polars as pl

log = logging.getLogger(__name__)

# All tables managed by the pipeline (raw staging + scored output).
_TABLES = ["user_perks", "raw_sessions", "raw_users", "raw_flights", "raw_hotels"]

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: pl.Expr, lon1: pl.Expr, lat2: pl.Expr, lon2: pl.Expr) -> pl.Expr:
    """
    Great-circle distance in kilometres between two points given in decimal degrees.

    Null in any coordinate yields null.
    """
    lat1, lon1, lat2, lon2 = (c.cast(pl.Float64).radians() for c in (lat1, lon1, lat2, lon2))
    a = (
        ((lat2 - lat1) / 2).sin().pow(2)
        + lat1.cos() * lat2.cos() * ((lon2 - lon1) / 2).sin().pow(2)
    )
    # Clip guards arcsin against a > 1 from float noise on antipodal points.
    return 2 * EARTH_RADIUS_KM * a.clip(0.0, 1.0).sqrt().arcsin()


def safe_ratio(numerator: pl.Expr, denominator: pl.Expr) -> pl.Expr:
    """numerator / denominator, or null when the denominator is zero or null."""
    return (
        pl.when(denominator > 0)
        .then(numerator.cast(pl.Float64) / denominator.cast(pl.Float64))
        .otherwise(None)
    )


def round_half_away(expr: pl.Expr, decimals: int = 2) -> pl.Expr:
    """
    Round to *decimals* places, halves away from zero (0.125 -> 0.13, -0.125 -> -0.13).

    Operates on the binary float value, so 0.285 (stored as 0.28499...) rounds down.
    Null stays null.
    """
    scale = 10 ** decimals
    return (expr.abs() * scale + 0.5).floor() / scale * expr.sign()


def clean_history(db_path: Path) -> None:
    """
    Drop all pipeline tables (raw + scored) from the DuckDB warehouse.

    Use this to reset the warehouse to a blank state before a fresh pipeline run,
    or to clear test data. The warehouse file itself is not deleted.
    """
    import duckdb
    log.info(f"Cleaning warehouse: {db_path}")
    con = duckdb.connect(str(db_path))
    try:
        for table in _TABLES:
            con.execute(f"DROP TABLE IF EXISTS {table}")
            log.info(f"  dropped {table}")
    finally:
        con.close()
    log.info("Warehouse cleaned.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s")
    _root = Path(__file__).resolve().parent.parent
    _db   = _root / "warehouse.duckdb"
    clean_history(_db)
    sys.exit(0)
