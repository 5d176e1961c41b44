from app.tasks.celery_app import celery
from app.tasks import worker_jobs


@celery.task(name="app.tasks.jobs.reconcile_stale_payments")
def reconcile_stale_payments(limit: int = 100):
    return worker_jobs.reconcile_stale_payments(limit=limit)
