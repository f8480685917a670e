"""
config.py — Pipeline configuration.

The canonical source of truth is config.yaml — edit that, not this file.
PipelineConfig.from_yaml() loads it at startup; Python field defaults serve as
fallbacks when the YAML is absent (clean clone, CI) so the pipeline always runs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import yaml

log = logging.getLogger(__name__)

# Default config.yaml location: same directory as this file.
_DEFAULT_YAML = Path(__file__).resolve().parent / "config.yaml"

# Thresholds compared against ratio metrics; must stay within [0, 1].
_FRACTION_FIELDS = (
    "no_orders_share",
    "exclusive_min_no_orders",
    "bag_max_cancellation_ratio",
    "bag_married_with_children",
    "bag_min_bags_ratio",
    "meal_max_hotel_discount",
    "dq_max_orphan_rate",
    "dq_max_perk_share",
)


def _optional_str(value) -> Optional[str]:
    """YAML parses unquoted dates into date objects; keep them as ISO strings."""
    return None if value is None else str(value)


@dataclass
class PipelineConfig:
    """
    All parameters for one pipeline run.

    Use PipelineConfig.from_yaml() in production. Constructing directly is fine
    for tests and programmatic use; field defaults mirror config.yaml.
    """

    # ── Eligibility ──────────────────────────────────────────────────────
    session_cutoff_date: str = "2023-01-04"   # sessions must start strictly after
    min_sessions: int = 7                     # users need strictly more than this
    # Reference date for age; None means today.
    as_of_date: Optional[str] = None

    # ── Perk rules (evaluated in order, first match wins) ────────────────
    # 1. No cancellation fees
    no_orders_share: float = 1.0
    max_avg_tot_spent: float = 80.0
    # 2. 1 night free hotel with flight
    free_night_hotel_count: int = 1
    free_night_min_flights: int = 1
    # 3. Exclusive discounts
    exclusive_min_no_orders: float = 0.78
    # 4. Free checked-in bag
    bag_max_cancellation_ratio: float = 0.032
    bag_married_with_children: float = 1.0
    bag_min_bags_ratio: float = 0.49
    # 5. Free hotel meal
    meal_max_hotel_discount: float = 0.11
    meal_min_hotel_count: int = 1

    # ── Data quality thresholds ──────────────────────────────────────────
    dq_max_session_minutes: int = 240
    dq_max_orphan_rate: float = 0.05
    dq_max_perk_share: float = 0.9

    # ── Infrastructure ───────────────────────────────────────────────────
    environment: str = "dev"   # dev | staging | prod
    db_path: str = "warehouse.duckdb"
    data_dir: str = "data"

    # ── Class-level factory ──────────────────────────────────────────────
    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "PipelineConfig":
        """
        Load config from YAML. Falls back to Python defaults if the file is
        absent or any individual key is missing.
        """
        if path is None:
            path = _DEFAULT_YAML

        try:
            with open(path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except FileNotFoundError:
            log.warning(f"config.yaml not found at {path} — using Python defaults.")
            return cls()

        elig  = data.get("eligibility",  {}) or {}
        perks = data.get("perks",        {}) or {}
        dq    = data.get("data_quality", {}) or {}
        db    = data.get("database",     {}) or {}
        src   = data.get("input",        {}) or {}

        env = data.get("environment", "dev")
        _env_paths = {
            "dev":     "warehouse_dev.duckdb",
            "staging": "warehouse_staging.duckdb",
            "prod":    "warehouse.duckdb",
        }
        default_db = _env_paths.get(env, "warehouse.duckdb")

        defaults = cls()
        return cls(
            environment                = env,
            session_cutoff_date        = str(elig.get("session_cutoff_date", defaults.session_cutoff_date)),
            min_sessions               = elig.get("min_sessions",        defaults.min_sessions),
            as_of_date                 = _optional_str(elig.get("as_of_date", defaults.as_of_date)),
            no_orders_share            = perks.get("no_orders_share",    defaults.no_orders_share),
            max_avg_tot_spent          = perks.get("max_avg_tot_spent",  defaults.max_avg_tot_spent),
            free_night_hotel_count     = perks.get("free_night_hotel_count", defaults.free_night_hotel_count),
            free_night_min_flights     = perks.get("free_night_min_flights", defaults.free_night_min_flights),
            exclusive_min_no_orders    = perks.get("exclusive_min_no_orders", defaults.exclusive_min_no_orders),
            bag_max_cancellation_ratio = perks.get("bag_max_cancellation_ratio", defaults.bag_max_cancellation_ratio),
            bag_married_with_children  = perks.get("bag_married_with_children", defaults.bag_married_with_children),
            bag_min_bags_ratio         = perks.get("bag_min_bags_ratio", defaults.bag_min_bags_ratio),
            meal_max_hotel_discount    = perks.get("meal_max_hotel_discount", defaults.meal_max_hotel_discount),
            meal_min_hotel_count       = perks.get("meal_min_hotel_count", defaults.meal_min_hotel_count),
            dq_max_session_minutes     = dq.get("max_session_minutes",   defaults.dq_max_session_minutes),
            dq_max_orphan_rate         = dq.get("max_orphan_rate",       defaults.dq_max_orphan_rate),
            dq_max_perk_share          = dq.get("max_perk_share",        defaults.dq_max_perk_share),
            db_path                    = db.get("path", default_db),
            data_dir                   = src.get("data_dir", defaults.data_dir),
        )

    def db_absolute_path(self, base_dir: Path) -> Path:
        """Resolve db_path relative to *base_dir* (project root)."""
        p = Path(self.db_path)
        return p if p.is_absolute() else (base_dir / p).resolve()

    def data_absolute_path(self, base_dir: Path) -> Path:
        """Resolve data_dir relative to *base_dir* (project root)."""
        p = Path(self.data_dir)
        return p if p.is_absolute() else (base_dir / p).resolve()

    # ── Dates ────────────────────────────────────────────────────────────
    def cutoff_datetime(self) -> datetime:
        """Cutoff as a naive datetime; a bare date means midnight of that day."""
        return datetime.fromisoformat(self.session_cutoff_date)

    def as_of(self) -> date:
        """Reference date used for age. Defaults to today."""
        if self.as_of_date is None:
            return date.today()
        return date.fromisoformat(str(self.as_of_date))

    # ── Validation ───────────────────────────────────────────────────────
    def validate(self) -> None:
        """Raise ValueError on self-contradictory configuration before the pipeline starts."""
        try:
            self.cutoff_datetime()
        except ValueError as exc:
            raise ValueError(
                f"session_cutoff_date must be an ISO date, got {self.session_cutoff_date!r}."
            ) from exc

        if self.as_of_date is not None:
            try:
                self.as_of()
            except ValueError as exc:
                raise ValueError(
                    f"as_of_date must be an ISO date or null, got {self.as_of_date!r}."
                ) from exc

        if self.min_sessions < 0:
            raise ValueError("min_sessions must be >= 0.")

        for name in _FRACTION_FIELDS:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}.")

        for name in ("free_night_hotel_count", "free_night_min_flights",
                     "meal_min_hotel_count", "dq_max_session_minutes"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0.")

        if self.max_avg_tot_spent < 0:
            raise ValueError("max_avg_tot_spent must be >= 0.")

    def to_json(self) -> str:
        """Serialise config to JSON for the pipeline run log."""
        return json.dumps(asdict(self), default=str)
