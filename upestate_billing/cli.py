"""Operator commands, available through `flask` or `python manage.py`"""

import json

import click
from flask_migrate import upgrade

from upestate_billing.errors import BillingError
from upestate_billing.services import SubscriptionStore, get_reconciliation_job, get_webhook_pipeline


def register_commands(app):

    @app.cli.command("upgrade-db")
    def upgrade_db():
        """Apply any pending database migrations (safe to re-run)"""
        click.echo("🔄 Applying database migrations...")
        upgrade()
        click.echo("✅ Database is at the latest revision.")

    @app.cli.command("create-subscription")
    @click.option("--user-id", type=int, required=True, help="Id of the newly created user account")
    def create_subscription(user_id):
        """Create the free/inactive subscription row for a user"""
        subscription = SubscriptionStore.create_for_user(user_id)
        click.echo(json.dumps(subscription.to_dict(), indent=2))

    @app.cli.command("reconcile")
    def reconcile():
        """Run one reconciliation pass against Stripe"""
        report = get_reconciliation_job().run()
        click.echo(json.dumps(report.to_dict(), indent=2))
        for failure in report.failures:
            click.echo(f"❌ {failure}", err=True)

    @app.cli.command("replay-event")
    @click.option("--event-id", required=True, help="Stripe event id (evt_...) of a failed event")
    def replay_event(event_id):
        """Re-run a stored failed webhook event through the pipeline"""
        try:
            result = get_webhook_pipeline().replay(event_id)
        except BillingError as exc:
            raise click.ClickException(f"{exc.code}: {exc.message}")
        click.echo(json.dumps(result.to_dict(), indent=2))
