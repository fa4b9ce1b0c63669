"""Blueprint registration."""

from routes.billing import billing_bp

ALL_BLUEPRINTS = [
    billing_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
