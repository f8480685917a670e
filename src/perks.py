"""
perks.py — Ordered first-match perk rules over UserMetrics.

PERK_RULES is evaluated top to bottom; the first rule whose predicate holds
decides the perk. DEFAULT_PERK applies when none does, so every user gets
exactly one label. A comparison against an undefined metric is false.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

import polars as pl

from config import PipelineConfig
from metrics import UserMetrics

log = logging.getLogger(__name__)

NO_CANCELLATION_FEES = "No cancellation fees"
FREE_HOTEL_NIGHT     = "1 night free hotel with flight"
EXCLUSIVE_DISCOUNTS  = "Exclusive discounts"
FREE_CHECKED_BAG     = "Free checked-in bag"
FREE_HOTEL_MEAL      = "Free hotel meal"

DEFAULT_PERK = EXCLUSIVE_DISCOUNTS

PERK_LABELS: tuple[str, ...] = (
    NO_CANCELLATION_FEES,
    FREE_HOTEL_NIGHT,
    EXCLUSIVE_DISCOUNTS,
    FREE_CHECKED_BAG,
    FREE_HOTEL_MEAL,
)


def _defined(value) -> bool:
    return value is not None and not (isinstance(value, float) and math.isnan(value))


def _eq(value, bound) -> bool:
    return _defined(value) and value == bound


def _lt(value, bound) -> bool:
    return _defined(value) and value < bound


def _gt(value, bound) -> bool:
    return _defined(value) and value > bound


@dataclass(frozen=True)
class PerkRule:
    label: str
    applies: Callable[[UserMetrics, PipelineConfig], bool]
    description: str = ""


PERK_RULES: tuple[PerkRule, ...] = (
    PerkRule(
        NO_CANCELLATION_FEES,
        lambda m, c: _eq(m.users_no_orders, c.no_orders_share)
        or _lt(m.avg_tot_spent, c.max_avg_tot_spent),
        "never orders, or spends little per session",
    ),
    PerkRule(
        FREE_HOTEL_NIGHT,
        lambda m, c: _eq(m.hotel_booked_count, c.free_night_hotel_count)
        and _gt(m.flight_booked_count, c.free_night_min_flights),
        "flies often, rarely books a hotel",
    ),
    PerkRule(
        EXCLUSIVE_DISCOUNTS,
        lambda m, c: _gt(m.users_no_orders, c.exclusive_min_no_orders),
        "mostly browses without ordering",
    ),
    PerkRule(
        FREE_CHECKED_BAG,
        lambda m, c: _lt(m.cancellation_ratio, c.bag_max_cancellation_ratio)
        and _eq(m.married_with_children, c.bag_married_with_children)
        and _gt(m.bags_ratio, c.bag_min_bags_ratio),
        "families that keep their bookings and check bags",
    ),
    PerkRule(
        FREE_HOTEL_MEAL,
        lambda m, c: _lt(m.average_hotel_discount_perc, c.meal_max_hotel_discount)
        and _gt(m.hotel_booked_count, c.meal_min_hotel_count),
        "repeat hotel guests on small discounts",
    ),
)


def matching_rule(metrics: UserMetrics, config: Optional[PipelineConfig] = None) -> Optional[PerkRule]:
    """Return the first rule that applies, or None when only the default does."""
    config = config or PipelineConfig()
    for rule in PERK_RULES:
        if rule.applies(metrics, config):
            return rule
    return None


def classify(metrics: UserMetrics, config: Optional[PipelineConfig] = None) -> str:
    """Perk label for one user."""
    rule = matching_rule(metrics, config)
    return rule.label if rule is not None else DEFAULT_PERK


def assign_perks(metrics_df: pl.DataFrame, config: Optional[PipelineConfig] = None) -> pl.DataFrame:
    """Append a perk column to a compute_user_metrics() frame."""
    config = config or PipelineConfig()
    labels = [
        classify(UserMetrics.from_row(row), config)
        for row in metrics_df.iter_rows(named=True)
    ]
    return metrics_df.with_columns(pl.Series("perk", labels, dtype=pl.Utf8))


def perk_distribution(perks_df: pl.DataFrame) -> pl.DataFrame:
    """Users and share per perk, in rule-table order; labels nobody got show 0."""
    total = len(perks_df)
    counts = dict(perks_df.group_by("perk").len().iter_rows())
    rows = [
        {
            "perk":      label,
            "users":     counts.get(label, 0),
            "share_pct": round(counts.get(label, 0) / total * 100, 1) if total else 0.0,
        }
        for label in PERK_LABELS
    ]
    return pl.DataFrame(rows, schema={"perk": pl.Utf8, "users": pl.Int64, "share_pct": pl.Float64})
