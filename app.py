import os
import uuid
from datetime import datetime

import click
from flask import Flask, g, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from extensions import db, limiter, mail, migrate
from routes.fee_rate_routes import admin_fee_rates_bp, school_fee_rates_bp
from routes.fee_routes import fee_bp
from routes.parent_routes import parent_bp
from routes.payment_routes import payments_bp
from utils.cache import ProfileCache
from utils.errors import ReconciliationError

_APP_START_TS = datetime.now()


def _register_hooks(app):
    @app.before_request
    def _assign_request_id():
        g.request_id = uuid.uuid4().hex[:16]
        g.profile = None

    # Set modern security headers on every response (API only, no inline assets)
    @app.after_request
    def _set_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        resp.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        if app.config.get("SESSION_COOKIE_SECURE", False):
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        request_id = getattr(g, "request_id", None)
        if request_id:
            resp.headers.setdefault("X-Request-ID", request_id)
        return resp


def _register_error_handlers(app):
    @app.errorhandler(ReconciliationError)
    def _handle_domain_error(e):
        if e.status_code >= 500:
            app.logger.error("%s: %s", type(e).__name__, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _handle_http_error(e):
        return jsonify({"ok": False, "error": e.description or e.name}), e.code

    @app.errorhandler(SQLAlchemyError)
    def _handle_db_error(e):
        db.session.rollback()
        app.logger.exception("Database error")
        return jsonify({"ok": False, "error": "Database error"}), 500


def _register_health(app):
    @app.route("/healthz")
    def healthz():
        """Basic liveness probe. Public and unauthenticated."""
        up_secs = max(0, int((datetime.now() - _APP_START_TS).total_seconds()))
        return jsonify({
            "ok": True,
            "status": "alive",
            "uptime_seconds": up_secs,
            "version": app.config.get("APP_NAME", "School Fee Payments"),
        })

    @app.route("/readyz")
    def readyz():
        """Readiness probe. Checks DB connectivity."""
        try:
            db.session.execute(text("SELECT 1"))
            db_ok = True
        except SQLAlchemyError:
            db.session.rollback()
            db_ok = False
        return jsonify({"ok": db_ok, "db": db_ok}), 200 if db_ok else 503


def _register_cli(app):
    @app.cli.command("reconcile-payments")
    @click.option("--payment-id", default=None, help="Repair a single payment.")
    @click.option("--limit", default=100, show_default=True, help="Max payments to repair.")
    @click.option("--dry-run", is_flag=True, help="Only list completed payments missing a transaction.")
    def reconcile_payments(payment_id, limit, dry_run):
        """Finish bookkeeping for completed payments that have no transaction row."""
        from utils.reconcile import find_unreconciled_payments, repair_payment

        targets = [payment_id] if payment_id else [p.id for p in find_unreconciled_payments(limit)]
        if not targets:
            click.echo("Nothing to reconcile.")
            return
        for pid in targets:
            if dry_run:
                click.echo(f"would repair {pid}")
                continue
            try:
                result = repair_payment(pid)
                click.echo(f"{pid}: {result.outcome}")
            except ReconciliationError as e:
                click.echo(f"{pid}: {e.message}", err=True)

    @app.cli.command("expire-fee-rates")
    def expire_fee_rates():
        """Expire pending fee rate proposals past their approval window."""
        from utils.fee_rates import expire_stale_rates

        click.echo(f"Expired {expire_stale_rates()} rate(s).")

    @app.cli.command("issue-token")
    @click.argument("profile_id")
    def issue_token(profile_id):
        """Print a signed bearer token for a profile (sandbox/testing)."""
        from utils.auth import sign_token

        click.echo(sign_token(profile_id))


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Trust reverse proxy headers for scheme/host when enabled
    if app.config.get("TRUST_PROXY", True):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    mail.init_app(app)
    app.extensions["profile_cache"] = ProfileCache(ttl_seconds=app.config.get("PROFILE_CACHE_TTL_SECONDS", 300))

    app.register_blueprint(payments_bp)
    app.register_blueprint(parent_bp)
    app.register_blueprint(fee_bp)
    app.register_blueprint(school_fee_rates_bp)
    app.register_blueprint(admin_fee_rates_bp)

    _register_hooks(app)
    _register_error_handlers(app)
    _register_health(app)
    _register_cli(app)

    if app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING"):
        from scheduler import start_scheduler

        app.extensions["scheduler"] = start_scheduler(app)

    return app


app = create_app()


if __name__ == "__main__":
    app.run(debug=os.environ.get("FLASK_DEBUG", "0") == "1")
