# upestate_billing/workers/tasks.py
import logging

from upestate_billing.services import get_reconciliation_job
from upestate_billing.workers.celery_app import celery

logger = logging.getLogger(__name__)


@celery.task(name="billing.reconcile_subscriptions")
def reconcile_subscriptions():
    report = get_reconciliation_job().run()
    return report.to_dict()
