"""Hourly streak reconciliation and fraud sweep."""
from datetime import datetime, timezone
import logging
import time

from habitstreak.core.config import settings
from habitstreak.core.metrics import streak_sweep_runs_total
from habitstreak.features.streaks.factory import build_engine
from habitstreak.features.streaks.reconcile_job import run_fraud_scan, run_reconcile_sweep
from habitstreak.features.streaks.service import StreakEngine

logger = logging.getLogger("habitstreak.sweep")


def run_sweep(
    engine: StreakEngine | None = None,
    *,
    now: datetime | None = None,
    timeout_seconds: float | None = None,
    window_hours: int | None = None,
    monotonic=time.monotonic,
) -> dict:
    eng = engine or build_engine(settings)
    ts = now or datetime.now(timezone.utc)
    timeout = timeout_seconds if timeout_seconds is not None else settings.SWEEP_TIMEOUT_SECONDS
    window = window_hours if window_hours is not None else settings.SWEEP_WINDOW_HOURS
    deadline = monotonic() + timeout

    try:
        reconcile = run_reconcile_sweep(eng, deadline=deadline, monotonic=monotonic)
        fraud = run_fraud_scan(
            eng.store,
            now=ts,
            window_hours=window,
            limits=eng.limits,
            deadline=deadline,
            monotonic=monotonic,
        )
    finally:
        if engine is None:
            eng.store.close()

    timed_out = reconcile["timed_out"] or fraud["timed_out"]
    if timed_out:
        status = "timeout"
    elif reconcile["failed"] or fraud["failed"]:
        status = "partial"
    else:
        status = "success"
    streak_sweep_runs_total.inc(labels={"status": status})

    logger.info(
        "[sweep] streak reconciliation",
        extra={
            "status": status,
            "checked": reconcile["checked"],
            "corrected": reconcile["corrected"],
            "failed": reconcile["failed"],
            "users_flagged": len(fraud["flagged"]),
        },
    )
    return {
        "status": status,
        "timed_out": timed_out,
        "reconcile": reconcile,
        "fraud": fraud,
        "timestamp": ts.isoformat(),
    }


if __name__ == "__main__":
    from habitstreak.core.logging import configure_logging

    configure_logging(settings.ENV)
    result = run_sweep()
    print(result)
