"""Shared fixtures: session-row builders and an in-memory DuckDB connection."""
import sys
from datetime import date, datetime, timedelta
from pathlib import Path

import duckdb
import polars as pl
import pytest

# Make src/ and the project root importable from the tests/ directory.
_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))
sys.path.insert(0, str(_ROOT / "src"))

from metrics import SESSION_SCHEMA

# First session of every built user; comfortably after the 2023-01-04 cutoff.
AFTER_CUTOFF = datetime(2023, 2, 1, 10, 0)


def _session(user_id: int, n: int, **overrides) -> dict:
    """One denormalised session row: n days after AFTER_CUTOFF, 10 minutes long, no booking."""
    start = AFTER_CUTOFF + timedelta(days=n)
    row = {name: None for name in SESSION_SCHEMA}
    row.update(
        session_id=f"{user_id}-{n}",
        user_id=user_id,
        session_start=start,
        session_end=start + timedelta(minutes=10),
        flight_booked=False,
        hotel_booked=False,
        cancellation=False,
        flight_discount=False,
        hotel_discount=False,
        checked_bags=0,
        birthdate=date(1990, 5, 17),
        married=False,
        has_children=False,
    )
    row.update(overrides)
    return row


@pytest.fixture
def session_row():
    """Builder for a single session row: session_row(user_id, n, **overrides)."""
    return _session


@pytest.fixture
def user_sessions():
    """Builder for `count` plain sessions of one user, numbered from `start`."""
    def _build(user_id: int, count: int, start: int = 0, **overrides) -> list[dict]:
        return [_session(user_id, start + i, **overrides) for i in range(count)]
    return _build


@pytest.fixture
def to_frame():
    """Turn a list of session-row dicts into a frame with the session schema."""
    def _frame(rows: list[dict]) -> pl.DataFrame:
        return pl.DataFrame(rows, schema=SESSION_SCHEMA)
    return _frame


@pytest.fixture
def mem_con():
    """Fresh in-memory DuckDB connection."""
    con = duckdb.connect(":memory:")
    yield con
    con.close()
