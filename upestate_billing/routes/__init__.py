from upestate_billing.routes.billing import billing_bp
from upestate_billing.routes.health import health_bp
from upestate_billing.routes.webhooks import webhooks_bp


def register_blueprints(app):
    app.register_blueprint(health_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(billing_bp)
