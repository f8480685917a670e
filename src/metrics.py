"""
metrics.py — Per-user behavioural metrics from denormalised session rows.

Input is one row per session, already left-joined to its user, flight and
hotel (see ingest.load_session_rows). Output is one row per eligible user.

Two passes:
  1. group_by(user_id) accumulates conditional counts and sums per user.
  2. a select derives ratios from those totals.

Zero denominators yield null, except cancellation_ratio (null by guard) and
bags_ratio (0.0 by guard when the user never booked a flight). Every
non-count output is rounded to 2 dp, halves away from zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from datetime import date
from typing import Any, Mapping, Optional

import polars as pl

from config import PipelineConfig
from utils import haversine_km, round_half_away, safe_ratio

log = logging.getLogger(__name__)

# Denormalised session row as produced by ingest.load_session_rows().
SESSION_SCHEMA: dict[str, pl.DataType] = {
    "session_id":              pl.Utf8,
    "user_id":                 pl.Int64,
    "trip_id":                 pl.Utf8,
    "session_start":           pl.Datetime("us"),
    "session_end":             pl.Datetime("us"),
    "flight_booked":           pl.Boolean,
    "hotel_booked":            pl.Boolean,
    "cancellation":            pl.Boolean,
    "flight_discount":         pl.Boolean,
    "hotel_discount":          pl.Boolean,
    "checked_bags":            pl.Int64,
    "birthdate":               pl.Date,
    "married":                 pl.Boolean,
    "has_children":            pl.Boolean,
    "base_fare_usd":           pl.Float64,
    "flight_discount_amount":  pl.Float64,
    "home_airport_lat":        pl.Float64,
    "home_airport_lon":        pl.Float64,
    "destination_airport_lat": pl.Float64,
    "destination_airport_lon": pl.Float64,
    "hotel_per_room_usd":      pl.Float64,
    "hotel_discount_amount":   pl.Float64,
}

_FLAGS = [
    "flight_booked", "hotel_booked", "cancellation",
    "flight_discount", "hotel_discount", "married", "has_children",
]
_AMOUNTS = [
    "base_fare_usd", "flight_discount_amount",
    "hotel_per_room_usd", "hotel_discount_amount",
]
_COORDS = [
    "home_airport_lat", "home_airport_lon",
    "destination_airport_lat", "destination_airport_lon",
]


@dataclass(frozen=True)
class UserMetrics:
    """Metrics snapshot for one eligible user. None means undefined."""

    user_id: int
    session_count: Optional[int] = None
    age: Optional[int] = None
    married_with_children: Optional[float] = None
    discount_flight_proportion: Optional[float] = None
    discount_hotel_proportion: Optional[float] = None
    average_flight_discount_perc: Optional[float] = None
    average_hotel_discount_perc: Optional[float] = None
    ads_per_km: Optional[float] = None
    mean_session_time: Optional[float] = None
    hotel_booking_ratio: Optional[float] = None
    flights_booking_ratio: Optional[float] = None
    avg_tot_spent: Optional[float] = None
    hotel_and_flights_booking_ratio: Optional[float] = None
    cancellation_ratio: Optional[float] = None
    bags_ratio: Optional[float] = None
    hotel_booked_count: Optional[int] = None
    flight_booked_count: Optional[int] = None
    users_no_orders: Optional[float] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserMetrics":
        """Build from a named row; keys that are not metrics (e.g. perk) are ignored."""
        return cls(**{k: row[k] for k in METRIC_COLUMNS if k in row})


METRIC_COLUMNS: tuple[str, ...] = tuple(f.name for f in fields(UserMetrics))

# Columns that must fall within [0, 1] when defined.
RATIO_COLUMNS: tuple[str, ...] = (
    "married_with_children",
    "discount_flight_proportion",
    "discount_hotel_proportion",
    "hotel_booking_ratio",
    "flights_booking_ratio",
    "hotel_and_flights_booking_ratio",
    "cancellation_ratio",
    "bags_ratio",
    "users_no_orders",
)


def _conform(sessions: pl.DataFrame) -> pl.DataFrame:
    """Check required columns and cast to SESSION_SCHEMA."""
    missing = set(SESSION_SCHEMA) - set(sessions.columns)
    if missing:
        raise ValueError(f"Session rows missing columns: {sorted(missing)}")
    return sessions.select(
        [pl.col(name).cast(dtype) for name, dtype in SESSION_SCHEMA.items()]
    )


def filter_eligible(sessions: pl.DataFrame, config=None) -> pl.DataFrame:
    """
    Keep sessions starting strictly after the cutoff, for users with strictly
    more than min_sessions such sessions.

    Pre-cutoff sessions are dropped before counting, so they never contribute
    to the threshold or to any metric.
    """
    config = config or PipelineConfig()
    recent = _conform(sessions).filter(
        pl.col("session_start") > pl.lit(config.cutoff_datetime())
    )
    eligible_users = (
        recent.group_by("user_id")
        .agg(pl.len().alias("n"))
        .filter(pl.col("n") > config.min_sessions)
        .select("user_id")
    )
    eligible = recent.join(eligible_users, on="user_id", how="semi")
    log.info(
        f"Eligibility: {eligible['user_id'].n_unique()} users with "
        f">{config.min_sessions} sessions after {config.session_cutoff_date} "
        f"({len(eligible)}/{len(sessions)} session rows kept)"
    )
    return eligible


def _prepare(sessions: pl.DataFrame) -> pl.DataFrame:
    """Coalesce flags and amounts, then add per-row derived columns."""
    df = sessions.with_columns(
        *[pl.col(c).fill_null(False) for c in _FLAGS],
        *[pl.col(c).fill_null(0.0) for c in _AMOUNTS],
        pl.col("checked_bags").fill_null(0),
    )
    has_coords = pl.all_horizontal([pl.col(c).is_not_null() for c in _COORDS])
    return df.with_columns(
        (pl.col("flight_booked") | pl.col("hotel_booked")).alias("any_booking"),
        (pl.col("base_fare_usd") * (1 - pl.col("flight_discount_amount"))).alias("net_flight_usd"),
        (pl.col("hotel_per_room_usd") * (1 - pl.col("hotel_discount_amount"))).alias("net_hotel_usd"),
        (pl.col("flight_booked") & has_coords).alias("has_flight_leg"),
        (pl.col("session_end") - pl.col("session_start")).dt.total_milliseconds().truediv(1000).alias("session_seconds"),
    ).with_columns(
        pl.when(pl.col("has_flight_leg"))
        .then(haversine_km(
            pl.col("home_airport_lat"), pl.col("home_airport_lon"),
            pl.col("destination_airport_lat"), pl.col("destination_airport_lon"),
        ))
        .otherwise(None)
        .alias("distance_km"),
    )


def _accumulate(df: pl.DataFrame) -> pl.DataFrame:
    """First pass: conditional counts and sums per user."""
    flight = pl.col("flight_booked")
    hotel = pl.col("hotel_booked")
    cancelled = pl.col("cancellation")
    discounted_flight = flight & pl.col("flight_discount")
    discounted_hotel = hotel & pl.col("hotel_discount")

    return df.group_by("user_id").agg(
        pl.len().alias("sessions"),
        pl.col("birthdate").first(),
        (pl.col("married") & pl.col("has_children")).sum().alias("married_with_children_sessions"),
        flight.sum().alias("flight_sessions"),
        hotel.sum().alias("hotel_sessions"),
        discounted_flight.sum().alias("discounted_flight_sessions"),
        discounted_hotel.sum().alias("discounted_hotel_sessions"),
        pl.col("flight_discount_amount").filter(discounted_flight).sum().alias("flight_discount_total"),
        pl.col("hotel_discount_amount").filter(discounted_hotel).sum().alias("hotel_discount_total"),
        pl.col("net_flight_usd").filter(pl.col("has_flight_leg")).sum().alias("flight_leg_usd"),
        pl.col("distance_km").sum().alias("distance_km"),
        pl.col("session_seconds").mean().alias("session_seconds"),
        (flight & ~cancelled).sum().alias("flight_kept"),
        (hotel & ~cancelled).sum().alias("hotel_kept"),
        (pl.col("net_flight_usd") + pl.col("net_hotel_usd")).mean().alias("spent_mean"),
        (flight & hotel).sum().alias("both_sessions"),
        pl.col("any_booking").sum().alias("booking_sessions"),
        (pl.col("any_booking") & cancelled).sum().alias("cancelled_booking_sessions"),
        (flight & (pl.col("checked_bags") > 0)).sum().alias("bagged_flight_sessions"),
        (~pl.col("any_booking")).sum().alias("no_order_sessions"),
    )


def _derive(totals: pl.DataFrame, as_of: date) -> pl.DataFrame:
    """Second pass: ratios and averages from the per-user totals."""
    c = pl.col
    return totals.select(
        c("user_id"),
        c("sessions").cast(pl.Int64).alias("session_count"),
        (pl.lit(as_of.year) - c("birthdate").dt.year()).cast(pl.Int64).alias("age"),
        round_half_away(c("married_with_children_sessions") / c("sessions")).alias("married_with_children"),
        round_half_away(safe_ratio(c("discounted_flight_sessions"), c("flight_sessions"))).alias("discount_flight_proportion"),
        round_half_away(safe_ratio(c("discounted_hotel_sessions"), c("hotel_sessions"))).alias("discount_hotel_proportion"),
        round_half_away(safe_ratio(c("flight_discount_total"), c("discounted_flight_sessions"))).alias("average_flight_discount_perc"),
        round_half_away(safe_ratio(c("hotel_discount_total"), c("discounted_hotel_sessions"))).alias("average_hotel_discount_perc"),
        round_half_away(safe_ratio(c("flight_leg_usd"), c("distance_km"))).alias("ads_per_km"),
        round_half_away(c("session_seconds")).alias("mean_session_time"),
        round_half_away(safe_ratio(c("hotel_kept"), c("hotel_sessions"))).alias("hotel_booking_ratio"),
        round_half_away(safe_ratio(c("flight_kept"), c("flight_sessions"))).alias("flights_booking_ratio"),
        round_half_away(c("spent_mean")).alias("avg_tot_spent"),
        round_half_away(safe_ratio(c("both_sessions"), c("booking_sessions"))).alias("hotel_and_flights_booking_ratio"),
        round_half_away(safe_ratio(c("cancelled_booking_sessions"), c("booking_sessions"))).alias("cancellation_ratio"),
        pl.when(c("flight_sessions") > 0)
        .then(round_half_away(c("bagged_flight_sessions") / c("flight_sessions")))
        .otherwise(pl.lit(0.0))
        .alias("bags_ratio"),
        c("hotel_kept").cast(pl.Int64).alias("hotel_booked_count"),
        c("flight_kept").cast(pl.Int64).alias("flight_booked_count"),
        round_half_away(c("no_order_sessions") / c("sessions")).alias("users_no_orders"),
    )


def compute_user_metrics(
    sessions: pl.DataFrame,
    config=None,
    as_of: Optional[date] = None,
) -> pl.DataFrame:
    """
    Reduce session rows to one metrics row per eligible user.

    Users failing eligibility are omitted. Columns follow METRIC_COLUMNS,
    rows are sorted by user_id.
    """
    config = config or PipelineConfig()
    as_of = as_of or config.as_of()

    eligible = filter_eligible(sessions, config)
    metrics = _derive(_accumulate(_prepare(eligible)), as_of)
    metrics = metrics.select(METRIC_COLUMNS).sort("user_id")
    log.info(f"Computed metrics for {len(metrics)} users (as_of={as_of.isoformat()})")
    return metrics
