import uuid

import sentry_sdk
from flask import Flask, g, jsonify, request

from .config import load_config
from .extensions import build_app_context, init_extensions
from .logging_config import configure_logging, get_logger


def apply_cors_headers(response, allowed_origins):
    origin = str(request.headers.get('Origin', '') or '').strip()
    if not origin or not request.path.startswith('/api/'):
        return response
    if origin.lower() not in allowed_origins:
        return response
    response.headers['Access-Control-Allow-Origin'] = origin
    response.headers['Vary'] = 'Origin'
    response.headers['Access-Control-Allow-Headers'] = 'Authorization, Content-Type'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
    return response


def create_app(config=None, app_ctx=None):
    """App factory entrypoint.

    Tests pass a prebuilt ``app_ctx`` to run against fake Firestore and Stripe
    clients; production builds the real clients from ``config``.
    """
    config = config or load_config()
    configure_logging(config.log_level)
    logger = get_logger()

    app = Flask(__name__)
    app.secret_key = config.flask_secret_key or uuid.uuid4().hex
    init_extensions(app, app_ctx or build_app_context(config, logger))

    from .blueprints import entitlements_bp, payments_bp

    app.register_blueprint(entitlements_bp)
    app.register_blueprint(payments_bp)

    @app.before_request
    def handle_api_options_preflight():
        if request.method == 'OPTIONS' and request.path.startswith('/api/'):
            return apply_cors_headers(app.make_default_options_response(), config.cors_allowed_origins)
        return None

    @app.before_request
    def attach_request_context():
        request_id = str(request.headers.get('X-Request-ID', '') or '').strip()[:120] or uuid.uuid4().hex
        g.request_id = request_id
        sentry_sdk.set_tag('request.id', request_id)
        sentry_sdk.set_tag('route.path', request.path)
        sentry_sdk.set_tag('route.method', request.method)
        sentry_sdk.set_tag('route.auth_header_present', 'true' if request.headers.get('Authorization') else 'false')

    @app.after_request
    def attach_response_context(response):
        request_id = str(getattr(g, 'request_id', '') or '').strip()
        if request_id:
            response.headers['X-Request-ID'] = request_id
        return apply_cors_headers(response, config.cors_allowed_origins)

    @app.errorhandler(404)
    def handle_not_found(_error):
        return jsonify({'error': 'Not found', 'details': {}}), 404

    return app
