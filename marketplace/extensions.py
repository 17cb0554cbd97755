"""Process-level client construction.

Clients are built once by the app factory and handed to request handlers
through ``app.extensions['marketplace']``; nothing here is read from module
globals at request time.
"""

import json
import logging
import os
import time

import firebase_admin
import sentry_sdk
import stripe
from firebase_admin import auth, credentials, firestore
from flask import jsonify
from sentry_sdk.integrations.flask import FlaskIntegration

from marketplace.services import auth_service
from marketplace.services.entitlement_service import EntitlementService
from marketplace.services.payments_service import PaymentsClient
from marketplace.services.rate_limit_service import RateLimiter

EXTENSION_KEY = 'marketplace'


class AppContext:
    """Everything a handler needs, bundled so tests can swap any piece."""

    def __init__(self, *, config, db, auth_module, stripe_module, firestore_module, logger, time_module=time, firebase_init_error=''):
        self.config = config
        self.db = db
        self.auth = auth_module
        self.stripe = stripe_module
        self.firestore = firestore_module
        self.logger = logger
        self.time = time_module
        self.jsonify = jsonify
        self.firebase_init_error = firebase_init_error
        self.payments = PaymentsClient(stripe_module, logger)
        self.entitlements = EntitlementService(
            db=db,
            payments=self.payments,
            logger=logger,
            time_module=time_module,
            store_timeout=config.firestore_timeout_seconds,
        )
        self.rate_limiter = RateLimiter(
            db=db,
            firestore_module=firestore_module,
            logger=logger,
            time_module=time_module,
            firestore_enabled=config.rate_limit_firestore_enabled,
        )

    def verify_firebase_token(self, request):
        return auth_service.verify_firebase_token(request, auth_module=self.auth, logger=self.logger)

    def require_identity(self, request):
        return auth_service.identity_from_token(self.verify_firebase_token(request))

    def check_rate_limit(self, key, limit, window_seconds):
        return self.rate_limiter.check(key, limit, window_seconds)


def init_firestore(config, logger):
    """Return ``(db, error_message)``; db is None when Firebase cannot start."""
    try:
        if os.path.exists('firebase-credentials.json'):
            cred = credentials.Certificate('firebase-credentials.json')
        else:
            if not config.firebase_credentials:
                raise ValueError('FIREBASE_CREDENTIALS is not set and firebase-credentials.json was not found.')
            cred = credentials.Certificate(json.loads(config.firebase_credentials))
        if not firebase_admin._apps:
            firebase_admin.initialize_app(cred)
        return firestore.client(), ''
    except Exception as exc:
        logger.info(f"⚠️ Firebase initialization skipped: {exc}")
        return None, str(exc)


def init_stripe(config):
    stripe.api_key = config.stripe_secret_key or None
    stripe.max_network_retries = config.stripe_max_network_retries
    stripe.default_http_client = stripe.RequestsClient(timeout=config.stripe_timeout_seconds)
    return stripe


def init_sentry(config):
    if not config.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=config.sentry_traces_sample_rate,
        send_default_pii=False,
        environment=config.sentry_environment,
        release=config.sentry_release,
    )
    return True


def build_app_context(config, logger=None):
    logger = logger or logging.getLogger('marketplace')
    init_sentry(config)
    db, firebase_init_error = init_firestore(config, logger)
    return AppContext(
        config=config,
        db=db,
        auth_module=auth,
        stripe_module=init_stripe(config),
        firestore_module=firestore,
        logger=logger,
        firebase_init_error=firebase_init_error,
    )


def init_extensions(app, app_ctx) -> None:
    app.extensions[EXTENSION_KEY] = app_ctx


def get_app_ctx(app):
    return app.extensions[EXTENSION_KEY]
