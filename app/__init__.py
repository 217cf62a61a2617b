from __future__ import annotations

from datetime import timedelta

import click
from flask import Flask, jsonify

from app.core.auth import auth_bp, enforce_idle_timeout
from app.core.config import Config
from app.core.extensions import db, login_manager, migrate
from app.core.models import Organization, User, seed_demo_data
from app.core.tenancy import SYSTEM_ACTOR, load_tenant_context
from app.dossiers import dossiers_bp


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    # module loggers (app.dossiers.*) propagate to app.logger's handler
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    app.before_request(enforce_idle_timeout)
    app.before_request(load_tenant_context)

    app.register_blueprint(auth_bp)
    app.register_blueprint(dossiers_bp)

    register_cli(app)
    register_routes(app)
    return app


def register_routes(app: Flask) -> None:
    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    @app.errorhandler(401)
    def unauthorized(_error):
        return jsonify({"error": "UNAUTHORIZED", "message": "Login required"}), 401

    @app.errorhandler(403)
    def forbidden(_error):
        return jsonify({"error": "FORBIDDEN", "message": "Not allowed"}), 403

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "NOT_FOUND", "message": "Not found"}), 404


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Delete existing data before seed.")
    def seed_demo(reset: bool) -> None:
        """Seed demo organizations, users and a dossier."""
        if reset:
            db.drop_all()
            db.create_all()
        if not Organization.query.first():
            seed_demo_data(db.session)
            click.echo("Demo data seeded.")
        else:
            click.echo("Seed skipped: existing organizations found.")

    @app.cli.command("dossiers-progress")
    @click.option("--limit", type=int, default=500, help="Maximum dossiers to check.")
    def dossiers_progress(limit: int) -> None:
        """Auto-progress every dossier whose phase tasks are done and that is not held."""
        from app.dossiers.lifecycle import progress_all

        result = progress_all(SYSTEM_ACTOR, limit=limit)
        click.echo(f"checked={result.checked} progressed={result.progressed} failed={result.failed}")

    @app.cli.command("tasks-archive-completed")
    @click.option("--hours", type=int, default=None, help="Archive tasks completed more than N hours ago.")
    def tasks_archive_completed(hours: int | None) -> None:
        """Archive completed tasks past the retention window."""
        from app.dossiers.tasks import archive_completed_tasks

        window = hours if hours is not None else app.config["TASK_ARCHIVE_AFTER_HOURS"]
        archived = archive_completed_tasks(timedelta(hours=window))
        click.echo(f"archived={archived}")

    @app.cli.command("notifications-dispatch")
    @click.option("--limit", type=int, default=100, help="Maximum notifications to deliver.")
    @click.option("--retry-failed", is_flag=True, help="Also retry failed deliveries.")
    def notifications_dispatch(limit: int, retry_failed: bool) -> None:
        """Deliver queued notification intents to the webhook."""
        from app.dossiers.notifications import dispatch_pending_notifications

        result = dispatch_pending_notifications(limit=limit, include_failed=retry_failed)
        click.echo(f"sent={result.sent} failed={result.failed}")


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    return db.session.get(User, int(user_id))
