"""Celery tasks supervising driver availability."""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task
def expire_stale_drivers_task():
    """
    Take drivers off duty once their heartbeat falls outside the
    freshness window. Scheduled by celery beat.
    """
    from drivers import registry

    expired = registry.expire_stale()
    return {"expired": expired}


@shared_task(bind=True, max_retries=3, default_retry_delay=10)
def reconcile_driver_availability_task(self):
    """
    Re-derive availability from ride state. Retried on database errors
    so a lost release after a ride ended is eventually corrected.
    """
    from django.db import DatabaseError
    from drivers import registry

    try:
        return registry.reconcile()
    except DatabaseError as exc:
        logger.warning(f"Driver reconciliation failed, retrying: {exc}")
        raise self.retry(exc=exc)
