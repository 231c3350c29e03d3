"""Error handlers for the application."""
import traceback

from flask import jsonify
from werkzeug.exceptions import HTTPException

from ..core.errors import IdmError


def register_error_handlers(app):
    """Register error handlers with the Flask app."""

    @app.errorhandler(IdmError)
    def handle_idm_error(error: IdmError):
        """Render domain errors with their own status."""
        if error.status >= 500:
            app.logger.error(f"{error.error_type}: {error.message}")
        else:
            app.logger.info(f"{error.error_type}: {error.message}")
        return jsonify(error.to_dict()), error.status

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        """Render werkzeug HTTP errors as JSON."""
        return jsonify({
            "status": error.code,
            "type": error.name.replace(" ", ""),
            "message": error.description,
        }), error.code

    @app.errorhandler(Exception)
    def handle_exception(error):
        """Handle uncaught exceptions."""
        if isinstance(error, HTTPException):
            return handle_http_exception(error)

        # ALWAYS log the error (even in production) - logs are secure
        app.logger.error(f"Unhandled exception: {error}", exc_info=True)
        print(f"[ERROR UNHANDLED] {error}")

        body = {
            "status": 500,
            "type": "Unknown",
            "message": "An unexpected error occurred",
        }
        # SECURITY: Show traceback ONLY in debug/demo mode, never in production
        if app.debug or app.config.get("DEMO_MODE", False):
            body["traceback"] = traceback.format_exc()
        return jsonify(body), 500
