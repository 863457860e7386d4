"""Run both server escalation tiers once.
Schedule externally (e.g. Railway cron every 5–15 minutes) when Celery beat
is not deployed:
    python -m app.scripts.run_escalation_jobs [--escalation-minutes 60] [--enable-calls]
"""

from __future__ import annotations

import argparse
import asyncio

from app.types.dose_contract import EscalationPolicy
from app.workers.confirmation import dispatch_confirmations
from app.workers.escalation import escalate_caregivers
from config import settings
import db


async def main(escalation_minutes: int | None = None, enable_calls: bool | None = None) -> None:
    policy = EscalationPolicy.from_settings(
        settings, escalation_minutes=escalation_minutes, enable_calls=enable_calls
    )
    try:
        for job in (dispatch_confirmations, escalate_caregivers):
            report = await job(policy)
            print(f"[CRON] {report.job}: processed={report.processed} sent={report.sent} "
                  f"failures={len(report.failures)}")
    finally:
        await db.dispose_engine()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--escalation-minutes", type=int, default=None)
    parser.add_argument("--enable-calls", action="store_true", default=None)
    return parser.parse_args()


if __name__ == "__main__":  # pragma: no cover
    args = _parse_args()
    print("[CRON] run_escalation_jobs: job started")
    try:
        asyncio.run(main(args.escalation_minutes, args.enable_calls))
        print("[CRON] run_escalation_jobs: job completed successfully")
    except Exception as e:
        print(f"[CRON] run_escalation_jobs: job failed: {e}")
