"""
smartseek/app.py

Flask application for the SmartSeek API.

Blueprints:
    billing_bp       - /api/auth, /api/profile, /api/credits, /api/stripe
    integrations_bp  - /api/integrations
    sourcing_bp      - /api/reports, /api/shortlists, /api/sourcing-requests,
                       /api/leads, /api/admin/*

Every error leaves as {"error": message, "code": CODE}. AppErrors carry
their own status; anything else rolls the request session back and is
reported as a 500.

Run:
    gunicorn 'app:create_app()'
    python app.py            (development)

Version History:
    2026-01-12: SmartSeek application factory
"""

import os
import time
import traceback

from flask import Flask, request, jsonify, g
from werkzeug.exceptions import HTTPException

from billing.auth import init_auth
from billing.db import configure, init_db, get_db, check_connection
from billing.routes import billing_bp
from config import SECRET_KEY
from errors import AppError
from integrations.routes import integrations_bp
from sourcing.routes import sourcing_bp


VERSION = '1.0.0'


def create_app(test_config: dict = None) -> Flask:
    """
    Build the application.

    Args:
        test_config: Extra Flask config. DATABASE_URL in it points the
            database layer elsewhere (tests use 'sqlite://').
    """
    app = Flask(__name__)
    app.config['SECRET_KEY'] = SECRET_KEY
    app.config['MAX_CONTENT_LENGTH'] = 2 * 1024 * 1024
    app.config['JSON_SORT_KEYS'] = False

    if test_config:
        app.config.update(test_config)
        if test_config.get('DATABASE_URL'):
            configure(test_config['DATABASE_URL'])

    init_db(app)
    init_auth(app)

    app.register_blueprint(billing_bp)
    app.register_blueprint(integrations_bp)
    app.register_blueprint(sourcing_bp)

    _register_error_handlers(app)
    _register_request_logging(app)

    @app.route('/api/health')
    def health():
        """Health check endpoint."""
        database_ok = check_connection()
        return jsonify({
            'status': 'healthy' if database_ok else 'degraded',
            'version': VERSION,
            'database': database_ok,
        }), 200 if database_ok else 503

    return app


# =============================================================================
# ERRORS
# =============================================================================

def _register_error_handlers(app: Flask):

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        code = (error.name or 'error').upper().replace(' ', '_')
        return jsonify({'error': error.description or error.name, 'code': code}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        print(f"[API] Unhandled error on {request.method} {request.path}: {error}")
        traceback.print_exc()
        get_db().rollback()
        return jsonify({'error': 'Internal server error', 'code': 'INTERNAL_ERROR'}), 500


# =============================================================================
# REQUEST LOGGING
# =============================================================================

def _register_request_logging(app: Flask):

    @app.before_request
    def start_timer():
        g.request_started = time.perf_counter()

    @app.after_request
    def log_request(response):
        if request.path.startswith('/api'):
            elapsed_ms = (time.perf_counter() - g.get('request_started', time.perf_counter())) * 1000
            print(f"[API] {request.method} {request.path} {response.status_code} in {elapsed_ms:.0f}ms")
        return response


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'
    create_app().run(host='0.0.0.0', port=port, debug=debug)
