"""
Celery tasks for closing overdue visits
"""
from celery import shared_task
import logging

from .services import run_auto_checkout

logger = logging.getLogger(__name__)


@shared_task
def auto_checkout_overdue_visits():
    """
    Write synthetic check-outs for every overdue open visit
    Runs every 15 minutes via Celery Beat
    """
    created = run_auto_checkout()
    logger.info(f"Auto checked out {len(created)} overdue visits")
    return f"Auto checked out {len(created)} visits"
