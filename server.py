"""
CurtainPoint backend: job lifecycle, escrow and point ledger API.
"""

import logging

from flask import Flask, jsonify
from flask_cors import CORS

from app_config import Config, validate_config
from errors import EscrowError
from extensions import limiter
from models import db
from routes import jobs_bp, points_bp, collaborations_bp, admin_bp, notifications_bp

_startup_logger = logging.getLogger("curtainpoint.startup")


def _configure_logging(level_name):
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level)


def _cors_origins(value):
    if not value or value == "*":
        return "*"
    return [o.strip() for o in value.split(",") if o.strip()]


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    _configure_logging(app.config.get("LOG_LEVEL", "INFO"))
    validate_config(app.config)

    # -----------------------------------------------------------------------
    # Initialize extensions
    # -----------------------------------------------------------------------
    CORS(app, resources={r"/api/*": {"origins": _cors_origins(app.config.get("CORS_ORIGINS"))}})
    db.init_app(app)
    limiter.init_app(app)

    # -----------------------------------------------------------------------
    # Error handlers
    # -----------------------------------------------------------------------
    @app.errorhandler(EscrowError)
    def handle_domain_error(e):
        if e.status_code >= 500:
            app.logger.error("Unhandled domain error: %s", e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(429)
    def ratelimit_handler(e):
        retry_after = e.get_headers().get("Retry-After") if hasattr(e, "get_headers") else None
        retry_after_seconds = int(retry_after) if retry_after else 60
        return jsonify({
            "error": "Too many requests. Please try again later.",
            "retry_after": retry_after_seconds,
        }), 429

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    # -----------------------------------------------------------------------
    # Register blueprints
    # -----------------------------------------------------------------------
    app.register_blueprint(jobs_bp)
    app.register_blueprint(points_bp)
    app.register_blueprint(collaborations_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(notifications_bp)

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"}), 200

    # -----------------------------------------------------------------------
    # Create all SQLAlchemy tables on startup
    # -----------------------------------------------------------------------
    with app.app_context():
        db.create_all()

    # -----------------------------------------------------------------------
    # Background scheduler (escrow settlement, event dispatch)
    # -----------------------------------------------------------------------
    from scheduler import init_scheduler
    app.extensions["curtainpoint_scheduler"] = init_scheduler(app)

    _startup_logger.info("CurtainPoint API ready (db=%s)", app.config["SQLALCHEMY_DATABASE_URI"].split("://")[0])
    return app
