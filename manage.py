"""Management script for database migrations and billing operations

    python manage.py upgrade-db
    python manage.py create-subscription --user-id 42
    python manage.py reconcile
    python manage.py replay-event --event-id evt_...
"""

from dotenv import load_dotenv
from flask.cli import FlaskGroup

from upestate_billing import create_app

load_dotenv()

cli = FlaskGroup(create_app=create_app)


if __name__ == "__main__":
    cli()
