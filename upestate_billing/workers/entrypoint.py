"""
Worker entrypoint:

    celery -A upestate_billing.workers.entrypoint worker --loglevel=INFO
    celery -A upestate_billing.workers.entrypoint beat
"""

from dotenv import load_dotenv

from upestate_billing import create_app
from upestate_billing.workers.celery_app import init_celery

load_dotenv()

flask_app = create_app()
celery = init_celery(flask_app)
