"""Blueprint registration."""

from routes.commerce import commerce_bp
from routes.orders import orders_bp
from routes.quotes import quotes_bp
from routes.webhooks import webhooks_bp

ALL_BLUEPRINTS = [
    quotes_bp,
    commerce_bp,
    orders_bp,
    webhooks_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
