# upestate_billing/workers/celery_app.py
import logging

from celery import Celery, Task

from upestate_billing.observability.metrics import TASK_EXECUTIONS_TOTAL
from upestate_billing.observability.sentry import capture_billing_error

logger = logging.getLogger(__name__)


class AppContextTask(Task):
    """Runs every task inside the Flask app context, counting and reporting failures."""

    abstract = True
    flask_app = None

    def __call__(self, *args, **kwargs):
        if self.flask_app is None:
            raise RuntimeError("init_celery(app) must run before tasks execute")
        with self.flask_app.app_context():
            try:
                result = super().__call__(*args, **kwargs)
            except Exception as exc:
                TASK_EXECUTIONS_TOTAL.labels(task_name=self.name, status="failure").inc()
                logger.exception("Task failed", extra={"task": self.name})
                capture_billing_error(exc, task=self.name)
                raise
            TASK_EXECUTIONS_TOTAL.labels(task_name=self.name, status="success").inc()
            return result


celery = Celery(
    "upestate_billing",
    task_cls=AppContextTask,
    include=["upestate_billing.workers.tasks"],
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)


def init_celery(app):
    """Bind the Celery app to a Flask app and install the reconciliation schedule."""
    celery.conf.update(
        broker_url=app.config["CELERY_BROKER_URL"],
        result_backend=app.config["CELERY_RESULT_BACKEND"],
        beat_schedule={
            "reconcile-subscriptions": {
                "task": "billing.reconcile_subscriptions",
                "schedule": app.config["RECONCILE_INTERVAL_MINUTES"] * 60.0,
            },
        },
    )
    AppContextTask.flask_app = app
    return celery
