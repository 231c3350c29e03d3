"""idmsync: identity reconciliation and propagation engine.

To use the Flask app:
    from idmsync.flask_app import create_app

To drive the engine without HTTP:
    from idmsync.services import Services
    from idmsync.config import Registry
"""
# Note: We don't import flask_app by default so CLI scripts only pulling the
# core and connectors do not need Flask
