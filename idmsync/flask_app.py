"""Flask application factory and bootstrap.

This module provides the create_app() factory function wiring the service
container, the blueprints and the error handlers.

Gunicorn:
    gunicorn -c gunicorn.conf.py "idmsync.flask_app:create_app()"
"""
from __future__ import annotations
import atexit
import logging
from typing import Optional

from flask import Flask
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import AppConfig, load_settings
from .services import Services


# ─────────────────────────────────────────────────────────────────────────────
# Application Factory
# ─────────────────────────────────────────────────────────────────────────────
def create_app(settings: Optional[AppConfig] = None, services: Optional[Services] = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        settings: Loaded settings; read from the environment when not given
        services: Service container; built from ``settings`` when not given
    """
    cfg = settings or load_settings()

    app = Flask(__name__)
    app.config["APP_CONFIG"] = cfg
    app.config["SECRET_KEY"] = cfg.secret_key
    app.config["DEMO_MODE"] = cfg.demo_mode
    app.config["JSON_SORT_KEYS"] = False

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    container = services or Services.from_settings(cfg)
    app.config["SERVICES"] = container
    if services is None:
        atexit.register(container.shutdown)

    # Trust X-Forwarded-* headers from proxy (nginx)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore

    # Register blueprints
    from .api import anys, errors, health, remediations, resources, tasks

    app.register_blueprint(health.bp)
    app.register_blueprint(remediations.bp)
    app.register_blueprint(resources.bp)
    app.register_blueprint(tasks.bp)
    app.register_blueprint(anys.bp)

    # Register error handlers
    errors.register_error_handlers(app)

    mode_label = "DEMO" if cfg.demo_mode else "PRODUCTION"
    print(f"[flask_app] Mode={mode_label}")
    print(f"[flask_app] Resources: {', '.join(sorted(container.resources)) or 'none'}")

    if cfg.demo_mode:
        print("[flask_app] WARNING: Demo mode active - do not deploy with demo credentials")

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000, debug=True)
