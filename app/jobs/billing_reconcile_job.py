"""
Hourly correcting pull against Stripe.
"""

from app.jobs.scheduling import PeriodicJob
from app.services.billing.reconcile_service import billing_reconciler

JOB_INTERVAL_MINUTES = 60


async def run_billing_reconcile_job() -> dict:
    return await billing_reconciler.reconcile_all()


billing_reconcile_job = PeriodicJob(
    "billing_reconcile", run_billing_reconcile_job, JOB_INTERVAL_MINUTES * 60
)


async def start_billing_reconcile_scheduler() -> None:
    await billing_reconcile_job.run_forever()
