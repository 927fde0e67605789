from src.application.expiry_sweeper import ReservationExpirySweeper
from src.application.payment_reconciler import reconcile_stale
from src.tasks.celery_app import celery


@celery.task(name="src.tasks.jobs.expire_pending_bookings")
def expire_pending_bookings():
    return ReservationExpirySweeper().sweep()


@celery.task(name="src.tasks.jobs.reconcile_pending_payments")
def reconcile_pending_payments():
    return reconcile_stale()
