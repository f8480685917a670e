"""
tests/test_perks.py — Unit tests for the ordered perk rules.

Coverage:
  - each rule in isolation, first-match precedence, default branch
  - undefined (None / NaN) metrics never satisfy a comparison
  - configurable thresholds, DataFrame assignment and distribution summary
  - end-to-end: session rows → metrics → perk
"""
from dataclasses import asdict
from datetime import date

import polars as pl
import pytest

from config import PipelineConfig
from metrics import UserMetrics, compute_user_metrics
from perks import (
    DEFAULT_PERK,
    EXCLUSIVE_DISCOUNTS,
    FREE_CHECKED_BAG,
    FREE_HOTEL_MEAL,
    FREE_HOTEL_NIGHT,
    NO_CANCELLATION_FEES,
    PERK_LABELS,
    PERK_RULES,
    assign_perks,
    classify,
    matching_rule,
    perk_distribution,
)

AS_OF = date(2025, 6, 1)


def _metrics(**overrides) -> UserMetrics:
    """A user who matches no rule: spends enough, orders sometimes, no hotel pattern."""
    base = dict(
        user_id=1,
        session_count=10,
        age=35,
        married_with_children=0.0,
        avg_tot_spent=150.0,
        users_no_orders=0.5,
        hotel_booked_count=0,
        flight_booked_count=0,
        cancellation_ratio=0.1,
        bags_ratio=0.0,
        average_hotel_discount_perc=None,
    )
    base.update(overrides)
    return UserMetrics(**base)


class TestRuleTable:
    def test_rule_order(self):
        assert [r.label for r in PERK_RULES] == [
            NO_CANCELLATION_FEES,
            FREE_HOTEL_NIGHT,
            EXCLUSIVE_DISCOUNTS,
            FREE_CHECKED_BAG,
            FREE_HOTEL_MEAL,
        ]

    def test_default_is_exclusive_discounts(self):
        assert DEFAULT_PERK == EXCLUSIVE_DISCOUNTS
        assert set(PERK_LABELS) == {r.label for r in PERK_RULES}


class TestClassify:
    def test_baseline_falls_through_to_default(self):
        m = _metrics()
        assert matching_rule(m) is None
        assert classify(m) == DEFAULT_PERK

    def test_all_undefined_metrics_get_default(self):
        m = UserMetrics(user_id=1)
        assert matching_rule(m) is None
        assert classify(m) == EXCLUSIVE_DISCOUNTS

    def test_rule1_never_orders(self):
        assert classify(_metrics(users_no_orders=1.0)) == NO_CANCELLATION_FEES

    def test_rule1_low_spend(self):
        assert classify(_metrics(avg_tot_spent=79.99)) == NO_CANCELLATION_FEES

    def test_rule1_spend_boundary_is_strict(self):
        assert classify(_metrics(avg_tot_spent=80.0)) == DEFAULT_PERK

    def test_rule2_one_hotel_several_flights(self):
        m = _metrics(hotel_booked_count=1, flight_booked_count=2)
        assert classify(m) == FREE_HOTEL_NIGHT

    def test_rule2_needs_more_than_one_flight(self):
        m = _metrics(hotel_booked_count=1, flight_booked_count=1)
        assert matching_rule(m) is None

    def test_rule3_mostly_browsing(self):
        m = _metrics(users_no_orders=0.8)
        assert matching_rule(m) is PERK_RULES[2]
        assert classify(m) == EXCLUSIVE_DISCOUNTS

    def test_rule4_families_with_bags(self):
        m = _metrics(cancellation_ratio=0.0, married_with_children=1.0, bags_ratio=0.5)
        assert classify(m) == FREE_CHECKED_BAG

    def test_rule4_skipped_when_cancellation_ratio_undefined(self):
        m = _metrics(cancellation_ratio=None, married_with_children=1.0, bags_ratio=0.9)
        assert classify(m) == DEFAULT_PERK

    def test_rule4_falls_through_to_rule5(self):
        m = _metrics(
            cancellation_ratio=None, married_with_children=1.0, bags_ratio=0.9,
            hotel_booked_count=2, average_hotel_discount_perc=0.05,
        )
        assert classify(m) == FREE_HOTEL_MEAL

    def test_rule5_repeat_hotel_guest(self):
        m = _metrics(hotel_booked_count=3, average_hotel_discount_perc=0.1)
        assert classify(m) == FREE_HOTEL_MEAL

    def test_rule5_needs_defined_discount(self):
        m = _metrics(hotel_booked_count=3, average_hotel_discount_perc=None)
        assert classify(m) == DEFAULT_PERK

    def test_rule1_beats_rule4(self):
        m = _metrics(
            avg_tot_spent=50.0,
            cancellation_ratio=0.0, married_with_children=1.0, bags_ratio=0.9,
        )
        assert matching_rule(m) is PERK_RULES[0]
        assert classify(m) == NO_CANCELLATION_FEES

    def test_rule2_beats_rule3(self):
        m = _metrics(hotel_booked_count=1, flight_booked_count=4, users_no_orders=0.9)
        assert classify(m) == FREE_HOTEL_NIGHT

    def test_nan_metric_is_undefined(self):
        m = _metrics(avg_tot_spent=float("nan"))
        assert classify(m) == DEFAULT_PERK

    def test_classify_is_deterministic(self):
        m = _metrics(hotel_booked_count=1, flight_booked_count=2)
        assert {classify(m) for _ in range(5)} == {FREE_HOTEL_NIGHT}

    def test_thresholds_come_from_config(self):
        cfg = PipelineConfig(max_avg_tot_spent=200.0)
        assert classify(_metrics(), cfg) == NO_CANCELLATION_FEES

    def test_configurable_exclusive_threshold(self):
        cfg = PipelineConfig(exclusive_min_no_orders=0.4)
        assert matching_rule(_metrics(), cfg) is PERK_RULES[2]


class TestAssignPerks:
    def _frame(self, *metrics: UserMetrics) -> pl.DataFrame:
        return pl.DataFrame([asdict(m) for m in metrics])

    def test_adds_perk_column_row_by_row(self):
        df = self._frame(
            _metrics(user_id=1, users_no_orders=1.0),
            _metrics(user_id=2, hotel_booked_count=1, flight_booked_count=2),
            _metrics(user_id=3),
        )
        out = assign_perks(df)
        assert out["perk"].to_list() == [NO_CANCELLATION_FEES, FREE_HOTEL_NIGHT, DEFAULT_PERK]
        assert out.columns[:-1] == df.columns

    def test_empty_frame(self):
        df = self._frame(_metrics()).clear()
        out = assign_perks(df)
        assert out.is_empty()
        assert "perk" in out.columns

    def test_distribution_lists_every_label(self):
        df = assign_perks(self._frame(
            _metrics(user_id=1, users_no_orders=1.0),
            _metrics(user_id=2, users_no_orders=1.0),
            _metrics(user_id=3),
            _metrics(user_id=4, hotel_booked_count=2, average_hotel_discount_perc=0.0),
        ))
        dist = {r["perk"]: (r["users"], r["share_pct"]) for r in perk_distribution(df).iter_rows(named=True)}
        assert list(dist) == list(PERK_LABELS)
        assert dist[NO_CANCELLATION_FEES] == (2, 50.0)
        assert dist[EXCLUSIVE_DISCOUNTS] == (1, 25.0)
        assert dist[FREE_HOTEL_MEAL] == (1, 25.0)
        assert dist[FREE_CHECKED_BAG] == (0, 0.0)


class TestEndToEnd:
    def test_browsing_only_user_gets_no_cancellation_fees(self, to_frame, user_sessions):
        metrics = compute_user_metrics(to_frame(user_sessions(1, 10)), as_of=AS_OF)
        out = assign_perks(metrics)
        assert out["users_no_orders"][0] == 1.0
        assert out["perk"].to_list() == [NO_CANCELLATION_FEES]

    def test_frequent_flyer_with_one_hotel_gets_free_night(self, to_frame, user_sessions, session_row):
        rows = [
            session_row(1, 0, flight_booked=True, base_fare_usd=600.0),
            session_row(1, 1, flight_booked=True, base_fare_usd=600.0),
            session_row(1, 2, hotel_booked=True, hotel_per_room_usd=300.0),
        ] + user_sessions(1, 7, start=3)
        out = assign_perks(compute_user_metrics(to_frame(rows), as_of=AS_OF))
        row = out.row(0, named=True)
        assert row["hotel_booked_count"] == 1
        assert row["flight_booked_count"] == 2
        assert row["avg_tot_spent"] == 150.0
        assert row["perk"] == FREE_HOTEL_NIGHT

    def test_ineligible_user_gets_no_row(self, to_frame, user_sessions):
        rows = user_sessions(1, 10) + user_sessions(2, 7)
        out = assign_perks(compute_user_metrics(to_frame(rows), as_of=AS_OF))
        assert out["user_id"].to_list() == [1]

    @pytest.mark.parametrize("user_id", [1, 2, 3])
    def test_every_scored_user_gets_a_known_label(self, to_frame, user_sessions, user_id):
        out = assign_perks(compute_user_metrics(to_frame(user_sessions(user_id, 9)), as_of=AS_OF))
        assert out["perk"][0] in PERK_LABELS
