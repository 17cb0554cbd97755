"""Business logic handlers for payment APIs."""

import logging

from marketplace.errors import EntitlementError, UpstreamUnavailable
from marketplace.logging_config import log_event
from marketplace.repositories import users_repo
from marketplace.services.entitlement_api_service import bad_request, error_response
from marketplace.services.payments_service import metadata_dict, read_field
from marketplace.services.rate_limit_service import build_rate_limited_response, normalize_key_part

GRANT_EVENTS = {'checkout.session.completed', 'checkout.session.async_payment_succeeded'}
FAIL_EVENTS = {'checkout.session.expired', 'checkout.session.async_payment_failed'}


def get_config(app_ctx):
    return app_ctx.jsonify({
        'stripe_publishable_key': app_ctx.config.stripe_publishable_key,
        'platform_fee_percent': app_ctx.config.platform_fee_percent,
    })


def _connected_account_id(app_ctx, creator_id):
    snapshot = users_repo.get_doc(app_ctx.db, creator_id, timeout=app_ctx.config.firestore_timeout_seconds)
    if not snapshot.exists:
        return ''
    data = snapshot.to_dict() or {}
    return str(data.get('stripe_account_id', '') or '').strip()


def create_checkout_session(app_ctx, request):
    try:
        identity = app_ctx.require_identity(request)
    except EntitlementError as e:
        return error_response(app_ctx, e)

    allowed_checkout, retry_after = app_ctx.check_rate_limit(
        key=f"checkout:{normalize_key_part(identity.uid, fallback='anon_uid')}",
        limit=app_ctx.config.checkout_rate_limit_max_requests,
        window_seconds=app_ctx.config.checkout_rate_limit_window_seconds,
    )
    if not allowed_checkout:
        app_ctx.logger.info(f"Checkout rate limit hit for {identity.uid}; retry after {retry_after}s")
        return build_rate_limited_response(
            app_ctx.jsonify,
            'Too many checkout attempts. Please wait before starting another checkout.',
            retry_after,
        )

    data = request.get_json(silent=True) or {}
    bundle_id = str(data.get('bundleId', '') or data.get('bundle_id', '') or '').strip()
    if not bundle_id:
        return bad_request(app_ctx, 'Missing bundleId')

    try:
        bundle = app_ctx.entitlements.get_bundle(bundle_id)
        if not bundle.active or bundle.price <= 0:
            return bad_request(app_ctx, 'This bundle is not available for purchase')
        if bundle.creator_id == identity.uid:
            return bad_request(app_ctx, 'You cannot buy your own bundle')
        if app_ctx.entitlements.check_access(identity.uid, bundle.id).has_access:
            return app_ctx.jsonify({'error': 'You already own this bundle', 'code': 'already_owned', 'details': {}}), 409

        destination = _connected_account_id(app_ctx, bundle.creator_id)
        if not destination:
            return bad_request(app_ctx, 'This creator cannot accept payments yet')

        site_url = app_ctx.config.site_url
        session = app_ctx.payments.create_bundle_checkout_session(
            bundle=bundle,
            buyer=identity,
            destination_account=destination,
            fee_percent=app_ctx.config.platform_fee_percent,
            success_url=f"{site_url}/bundles/{bundle.id}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{site_url}/bundles/{bundle.id}?payment=cancelled",
        )
        session_id = str(read_field(session, 'id', '') or '')
        app_ctx.entitlements.record_pending(session_id, identity.uid, bundle)
        return app_ctx.jsonify({'checkoutUrl': read_field(session, 'url', ''), 'sessionId': session_id})
    except EntitlementError as e:
        return error_response(app_ctx, e)
    except Exception as e:
        app_ctx.logger.error(f"Stripe checkout error: {e}")
        return app_ctx.jsonify({'error': 'Could not create checkout session. Please try again.', 'details': {}}), 500


def _handle_checkout_event(app_ctx, event_type, session):
    session_id = str(read_field(session, 'id', '') or '')
    if event_type in FAIL_EVENTS:
        app_ctx.entitlements.mark_failed(session_id, reason=event_type)
        return

    metadata = metadata_dict(session)
    buyer_id = metadata.get('buyer_id', '') or str(read_field(session, 'client_reference_id', '') or '')
    bundle_id = metadata.get('bundle_id', '')
    if not buyer_id or not bundle_id:
        log_event(app_ctx.logger, logging.WARNING, 'webhook_missing_metadata', event_type=event_type, session_id=session_id)
        return

    result = app_ctx.entitlements.grant_access(buyer_id, bundle_id, session_id, verification_method='webhook')
    log_event(
        app_ctx.logger, logging.INFO, 'webhook_checkout_processed',
        event_type=event_type, session_id=session_id, buyer_id=buyer_id, bundle_id=bundle_id,
        granted=result.granted, already_granted=result.already_granted,
    )


def stripe_webhook(app_ctx, request):
    payload = request.data
    sig_header = request.headers.get('Stripe-Signature', '')
    secret = app_ctx.config.stripe_webhook_secret

    if not secret:
        log_event(app_ctx.logger, logging.WARNING, 'webhook_rejected', reason='secret_not_configured')
        return app_ctx.jsonify({'error': 'Webhook not configured'}), 500

    try:
        event = app_ctx.payments.construct_webhook_event(payload, sig_header, secret)
    except ValueError:
        log_event(app_ctx.logger, logging.WARNING, 'webhook_rejected', reason='invalid_payload')
        return 'Invalid payload', 400
    except app_ctx.stripe.SignatureVerificationError as e:
        log_event(app_ctx.logger, logging.WARNING, 'webhook_rejected', reason='invalid_signature', error=str(e))
        return 'Invalid signature', 400

    event_type = str(read_field(event, 'type', '') or '')
    if event_type not in GRANT_EVENTS and event_type not in FAIL_EVENTS:
        return '', 200

    session = read_field(read_field(event, 'data', {}), 'object', {})
    try:
        _handle_checkout_event(app_ctx, event_type, session)
    except UpstreamUnavailable as e:
        # Non-2xx makes Stripe redeliver later.
        log_event(
            app_ctx.logger, logging.ERROR, 'webhook_deferred',
            event_type=event_type, session_id=read_field(session, 'id', ''), details=e.details,
        )
        return app_ctx.jsonify(e.to_payload()), 500
    except EntitlementError as e:
        log_event(
            app_ctx.logger, logging.WARNING, 'webhook_not_processed',
            event_type=event_type, session_id=read_field(session, 'id', ''), code=e.code, details=e.details,
        )
    return '', 200


def get_purchase_history(app_ctx, request):
    try:
        identity = app_ctx.require_identity(request)
    except EntitlementError as e:
        return error_response(app_ctx, e)

    try:
        purchases = app_ctx.entitlements.purchase_history(identity.uid, limit=50)
        return app_ctx.jsonify({'purchases': [purchase.to_public_dict() for purchase in purchases]})
    except Exception as e:
        app_ctx.logger.error(f"Error fetching purchase history: {e}")
        return app_ctx.jsonify({'purchases': []})
