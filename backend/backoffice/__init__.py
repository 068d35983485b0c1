# backend/backoffice/__init__.py
import logging

from flask import Flask, jsonify

from .config import Config
from .extensions import db, migrate
from .validation import LedgerError


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Overrides must land before extensions read the config
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.audit_service import build_audit_sink
    from .services.monitor_service import ResourceMonitor

    app.extensions["audit_sink"] = build_audit_sink(app.config.get("AUDIT_SINK", "database"))

    def _pool_status() -> str:
        with app.app_context():
            return db.engine.pool.status()

    monitor = ResourceMonitor(
        interval=app.config.get("RESOURCE_MONITOR_INTERVAL", 60.0),
        pool_status=_pool_status,
    )
    app.extensions["resource_monitor"] = monitor
    if app.config.get("RESOURCE_MONITOR_ENABLED"):
        monitor.start()

    # Register blueprints
    from .routes.system import system_bp
    from .routes.sales import sales_bp
    from .routes.returns import returns_bp
    from .routes.transfers import transfers_bp
    from .routes.purchasing import purchasing_bp
    from .routes.customers import customers_bp
    from .routes.invoices import invoices_bp
    from .routes.drawers import drawers_bp
    from .routes.inventory import inventory_bp
    from .routes.ledger import ledger_bp
    from .routes.webhooks import webhooks_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(returns_bp)
    app.register_blueprint(transfers_bp)
    app.register_blueprint(purchasing_bp)
    app.register_blueprint(customers_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(drawers_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(ledger_bp)
    app.register_blueprint(webhooks_bp)

    @app.errorhandler(LedgerError)
    def handle_ledger_error(exc: LedgerError):
        if exc.status_code >= 500:
            app.logger.error("Unhandled ledger error: %s", exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
