"""
expenseflow/__init__.py

Flask application factory for Trip Expense Approvals.

Requirements:
- Clear architecture, stable imports, server-side security.
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev/tests.
- JSON API: every domain error is rendered by one handler with its own
  HTTP status and a machine-readable code.
"""

from __future__ import annotations

import logging
from datetime import date

import click
from flask import Flask, jsonify
from flask_login import current_user

from .errors import ExpenseFlowError, NotAuthorizedError
from .extensions import csrf, db, login_manager, migrate
from .models import User

logger = logging.getLogger(__name__)


def create_app(config_object: str | object = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.getLogger("expenseflow").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        try:
            user = db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "NOT_AUTHENTICATED", "message": "Login required"}), 401

    # ----------------------------------------------------------------------
    # Error handling
    # ----------------------------------------------------------------------
    @app.errorhandler(ExpenseFlowError)
    def handle_domain_error(exc: ExpenseFlowError):
        """Render any domain error as JSON with its status code."""
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.code, exc.message)
        elif isinstance(exc, NotAuthorizedError):
            logger.warning(
                "Denied for user %s: %s",
                current_user.get_id() if current_user.is_authenticated else None,
                exc.message,
            )
        else:
            logger.info("%s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.trips import trips_bp
    from .blueprints.admin_requests import admin_requests_bp
    from .blueprints.budgets import budgets_bp
    from .blueprints.settings import settings_bp
    from .blueprints.audit import audit_bp
    from .blueprints.users import users_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(trips_bp)
    app.register_blueprint(admin_requests_bp)
    app.register_blueprint(budgets_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(users_bp)

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("seed-defaults")
    def seed_defaults_command():
        """Seed default KM rates."""
        from .seed import seed_default_rates

        added = seed_default_rates()
        click.echo(f"Default KM rates seeded ({added} added).")

    @app.cli.command("reset-monthly-bonus")
    @click.option("--department-id", type=int, default=None, help="Only reset this department.")
    def reset_monthly_bonus_command(department_id):
        """Clear monthly budget bonuses."""
        from .ledger import reset_monthly_bonus
        from .utils import unit_of_work

        with unit_of_work():
            count = reset_monthly_bonus(department_id)
        click.echo(f"Monthly budget bonus reset for {count} department(s).")

    @app.cli.command("recalculate-trip-costs")
    @click.option("--rate-id", type=int, default=None, help="Only trips priced with this rate.")
    def recalculate_trip_costs_command(rate_id):
        """Re-price kilometer based trips with the rate in force on their date."""
        from .rates import recalculate_trip_costs

        count = recalculate_trip_costs(rate_id=rate_id)
        click.echo(f"{count} trip cost(s) recalculated.")

    @app.cli.command("expire-projects")
    @click.option("--today", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
    def expire_projects_command(today):
        """Deactivate projects past their expiry date."""
        from .ledger import expire_projects
        from .utils import unit_of_work

        with unit_of_work():
            count = expire_projects(today.date() if today else date.today())
        click.echo(f"{count} project(s) expired.")

    @app.route("/")
    def index():
        return jsonify({"app": app.config.get("APP_NAME"), "status": "ok"})

    return app
