"""Gunicorn configuration file.

Run with:
    gunicorn -c gunicorn.conf.py "idmsync.flask_app:create_app()"

Every worker builds its own service container (storage, connectors and the
background job runner), so the number of workers defaults to 1: with more
workers each one holds an independent in-process store.
"""
import os

bind = os.environ.get("GUNICORN_BIND", "0.0.0.0:5000")
workers = int(os.environ.get("GUNICORN_WORKERS", "1"))
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "120"))
accesslog = "-"
errorlog = "-"


def post_fork(server, worker):
    """
    Called just after a worker has been forked.

    Reports where secrets will come from; settings.py does the actual loading
    (/run/secrets first, environment fallback).
    """
    from pathlib import Path

    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"
    if demo_mode:
        worker.log.warning("DEMO_MODE=true: throwaway secrets will be generated")

    if int(os.environ.get("GUNICORN_WORKERS", "1")) > 1:
        worker.log.warning("Several workers share no state: each keeps its own identity store")

    secrets_dir = Path("/run/secrets")
    if secrets_dir.exists() and secrets_dir.is_dir():
        secret_files = list(secrets_dir.glob("*"))
        if secret_files:
            worker.log.info(f"Found {len(secret_files)} secrets in /run/secrets")
            return
    worker.log.info("No Docker secrets mounted, using environment variables")
