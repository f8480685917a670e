"""
run_pipeline.py — End-to-end orchestrator for TravelTide perk assignment.

Steps:
  1. Ingest the four CSV exports into DuckDB   (src/ingest.py)
  2. Join session rows + row-level DQ checks    (src/ingest.py, src/validate.py)
  3. Aggregate per-user metrics                 (src/metrics.py)
  4. Assign perks, write user_perks, DQ checks  (src/perks.py, src/validate.py)
  5. Record run in JSON log                     (logs/YYYY/MM/YYYYMMDD.json)

  mode='full'         → all steps
  mode='ingest-only'  → step 1 only
  mode='score-only'   → steps 2–4 (requires raw tables already loaded)

Returns a results dict so callers can consume it without re-running the pipeline.
Raises RuntimeError on failure — never calls sys.exit.
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import duckdb

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s")
log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
LOGS_DIR = BASE_DIR / "logs"   # logs/YYYY/MM/YYYYMMDD.json

# Add src/ and the project root so ingest/validate/metrics/perks/config are importable.
sys.path.insert(0, str(BASE_DIR / "src"))
sys.path.insert(0, str(BASE_DIR))

from config import PipelineConfig
from ingest import load_session_rows, replace_table
from metrics import compute_user_metrics
from perks import assign_perks, perk_distribution
from validate import check_session_rows, run_checks, warn_if_overwrite

MODES = ("full", "ingest-only", "score-only")


class PipelineRunLog:
    """
    One JSON entry per run in logs/YYYY/MM/YYYYMMDD.json.

    The entry is written as 'running' on start() and rewritten in place by
    finish() from the run summary that main() also returns. Writes go through
    a temp file and an atomic rename.
    """

    _FMT = "%Y-%m-%dT%H:%M:%SZ"  # UTC, trimmed to seconds

    # summary key → run-log field
    _SUMMARY_FIELDS = {
        "new_sessions": "new_sessions_ingested",
        "quarantined":  "quarantined_sessions",
        "users_scored": "users_scored",
        "distribution": "perk_distribution",
        "dq_passed":    "dq_checks_passed",
    }

    def __init__(self, config: PipelineConfig, mode: str = "full") -> None:
        self._started_at = datetime.now(tz=timezone.utc)
        self._warnings: list[str] = []
        self._log_path = LOGS_DIR / self._started_at.strftime("%Y/%m/%Y%m%d.json")
        self._run_id = 1 + sum(len(_load_entries(p)) for p in LOGS_DIR.rglob("*.json"))
        self._entry: dict = {
            "run_id":     self._run_id,
            "mode":       mode,
            "started_at": self._started_at.strftime(self._FMT),
            "status":     "running",
            "config":     json.loads(config.to_json()),
            **{field: None for field in self._SUMMARY_FIELDS.values()},
        }

    def _save(self) -> None:
        entries = [e for e in _load_entries(self._log_path) if e.get("run_id") != self._run_id]
        entries.append(self._entry)
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._log_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(entries, indent=2, default=str), encoding="utf-8")
        tmp.replace(self._log_path)

    def start(self) -> None:
        self._save()
        log.info(f"Run log → {self._log_path} (run_id={self._run_id})")

    def add_warning(self, msg: str) -> None:
        self._warnings.append(msg)

    def finish(self, status: str, summary: dict, error: str | None = None) -> None:
        finished_at = datetime.now(tz=timezone.utc)
        self._entry.update({
            field: summary.get(key) for key, field in self._SUMMARY_FIELDS.items()
        })
        self._entry.update({
            "finished_at":      finished_at.strftime(self._FMT),
            "duration_seconds": round((finished_at - self._started_at).total_seconds(), 1),
            "status":           status,
            "warnings":         self._warnings,
            "error_message":    error,
        })
        self._save()
        log.info(f"Run log finalised (status={status}, run_id={self._run_id})")

    @property
    def run_id(self) -> int:
        return self._run_id

    @property
    def log_path(self) -> Path:
        return self._log_path


def _load_entries(path: Path) -> list[dict]:
    """Entries of one daily log file; an unreadable file counts as empty."""
    if not path.exists():
        return []
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        log.warning(f"Skipping unreadable run log {path}: {exc}")
        return []


def main(config: PipelineConfig | None = None, mode: str = "full") -> dict:
    """
    Run the pipeline.

    mode options:
      'full'         — ingest → join → aggregate → classify → validate
      'ingest-only'  — raw data load only
      'score-only'   — everything after ingestion (assumes raw tables exist)
    """
    if mode not in MODES:
        raise ValueError(f"Unknown mode {mode!r}; expected one of {MODES}.")
    if config is None:
        config = PipelineConfig.from_yaml()
    config.validate()

    db_path  = config.db_absolute_path(BASE_DIR)
    data_dir = config.data_absolute_path(BASE_DIR)

    log.info("=" * 60)
    log.info("TRAVELTIDE PERKS — Pipeline Start")
    log.info(f"mode={mode}  config={config.to_json()}")
    log.info("=" * 60)

    run_log = PipelineRunLog(config, mode)
    run_log.start()
    log.info(f"Pipeline run_id: {run_log.run_id}")

    for w in warn_if_overwrite(db_path, label="DuckDB warehouse"):
        log.info(w)

    summary: dict = {
        "new_sessions": 0,
        "quarantined":  0,
        "users_scored": 0,
        "distribution": {},
        "dq_passed":    False,
    }

    con = None
    try:
        # ── STEP 1: Ingest ───────────────────────────────────────────────
        if mode in ("full", "ingest-only"):
            log.info("\n[Step 1/4] Ingesting raw data...")
            from ingest import main as ingest_main
            ingest_result = ingest_main(db_path=db_path, data_dir=data_dir)
            summary["new_sessions"] = ingest_result.get("new_sessions", 0)
            log.info(
                f"  Ingested: {ingest_result.get('new_users', 0)} users, "
                f"{summary['new_sessions']} sessions."
            )

            if mode == "ingest-only":
                run_log.finish("success", summary)
                return {**summary, "mode": mode, "run_id": run_log.run_id}

        con = duckdb.connect(str(db_path))

        # ── STEP 2: Session rows + row-level checks ─────────────────────
        log.info("\n[Step 2/4] Joining session rows and checking them...")
        raw_rows = load_session_rows(con)
        rows, row_issues = check_session_rows(raw_rows, config)
        summary["quarantined"] = len(raw_rows) - len(rows)
        for issue in row_issues:
            run_log.add_warning(issue)

        # ── STEP 3: Aggregate ───────────────────────────────────────────
        log.info("\n[Step 3/4] Computing user metrics...")
        metrics_df = compute_user_metrics(rows, config)

        # ── STEP 4: Classify + persist + output checks ──────────────────
        log.info("\n[Step 4/4] Assigning perks...")
        perks_df = assign_perks(metrics_df, config)
        summary["users_scored"] = len(perks_df)

        replace_table(con, "user_perks", perks_df)
        log.info(f"✓ user_perks written ({len(perks_df)} rows)")

        failures, dq_warnings = run_checks(con, config)
        for w in dq_warnings:
            run_log.add_warning(w)

        if failures:
            log.error("\n" + "=" * 60)
            log.error("PIPELINE HALTED — Data quality checks failed:")
            for f in failures:
                log.error(f"  • {f}")
            log.error("=" * 60)
            raise RuntimeError("; ".join(failures))
        summary["dq_passed"] = True

        distribution_df = perk_distribution(perks_df)
        summary["distribution"] = {
            r["perk"]: r["users"] for r in distribution_df.iter_rows(named=True)
        }

        log.info("\n" + "=" * 60)
        log.info("PERK ASSIGNMENT")
        log.info("=" * 60)
        _hdr = f"{'Perk':<34} {'Users':>7} {'Share':>7}"
        log.info(_hdr)
        log.info("-" * len(_hdr))
        for _r in distribution_df.iter_rows(named=True):
            log.info(f"{_r['perk']:<34} {_r['users']:>7} {_r['share_pct']:>6.1f}%")
        log.info("=" * 60)

        run_log.finish("success", summary)

        return {
            **summary,
            "perks_df":        perks_df,
            "distribution_df": distribution_df,
            "row_issues":      row_issues,
            "dq_warnings":     dq_warnings,
            "run_id":          run_log.run_id,
            "log_path":        str(run_log.log_path),
            "mode":            mode,
            "config":          config,
        }

    except Exception as exc:
        try:
            run_log.finish("failed", summary, error=str(exc))
        except OSError as log_exc:
            log.error(f"Could not finalise run log: {log_exc}")
        raise

    finally:
        if con is not None:
            con.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="TravelTide Perks Pipeline — Ingest, Aggregate, Classify, Validate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  python run_pipeline.py                       # Full pipeline (default)
  python run_pipeline.py --mode ingest-only    # Load raw CSV exports only
  python run_pipeline.py --mode score-only     # Re-score from loaded tables
  python run_pipeline.py --config other.yaml   # Alternative configuration
        """
    )
    parser.add_argument(
        "--mode",
        choices=list(MODES),
        default="full",
        help="Pipeline mode (default: full)"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a config.yaml (default: config.yaml next to this file)"
    )
    args = parser.parse_args()
    main(config=PipelineConfig.from_yaml(args.config), mode=args.mode)
