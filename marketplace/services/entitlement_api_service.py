"""Business logic handlers for entitlement APIs."""

from marketplace.errors import EntitlementError
from marketplace.repositories import users_repo


def error_response(app_ctx, exc):
    return app_ctx.jsonify(exc.to_payload()), exc.http_status


def bad_request(app_ctx, message):
    return app_ctx.jsonify({'error': message, 'details': {}}), 400


def _request_value(data, *keys):
    for key in keys:
        value = str(data.get(key, '') or '').strip()
        if value:
            return value
    return ''


def creator_profile(app_ctx, creator_id):
    if not creator_id:
        return None
    try:
        snapshot = users_repo.get_doc(app_ctx.db, creator_id, timeout=app_ctx.config.firestore_timeout_seconds)
    except Exception as e:
        app_ctx.logger.warning(f"Could not load creator profile {creator_id}: {e}")
        return None
    if not snapshot.exists:
        return None
    data = snapshot.to_dict() or {}
    return {
        'id': creator_id,
        'displayName': data.get('display_name') or data.get('username') or 'Unknown Creator',
        'username': data.get('username', ''),
    }


def grant_access(app_ctx, request):
    data = request.get_json(silent=True) or {}
    try:
        identity = app_ctx.require_identity(request)
        bundle_id = _request_value(data, 'bundleId', 'bundle_id')
        reference = _request_value(data, 'paymentReference', 'payment_reference', 'sessionId', 'session_id')
        if not bundle_id or not reference:
            return bad_request(app_ctx, 'bundleId and paymentReference are required')

        result = app_ctx.entitlements.grant_access(
            identity.uid,
            bundle_id,
            reference,
            verification_method='success_page',
        )
        bundle = app_ctx.entitlements.get_bundle(bundle_id)
        return app_ctx.jsonify({
            'granted': result.granted,
            'alreadyGranted': result.already_granted,
            'purchase': result.purchase.to_public_dict(),
            'bundle': bundle.to_public_dict(),
            'creator': creator_profile(app_ctx, bundle.creator_id),
        })
    except EntitlementError as e:
        return error_response(app_ctx, e)
    except Exception as e:
        app_ctx.logger.error(f"Grant access error: {e}")
        return app_ctx.jsonify({'error': 'Could not confirm your purchase. Please try again.', 'details': {}}), 500


def check_access(app_ctx, request):
    try:
        identity = app_ctx.require_identity(request)
        bundle_id = str(request.args.get('bundleId', '') or request.args.get('bundle_id', '') or '').strip()
        if not bundle_id:
            return bad_request(app_ctx, 'Missing bundleId')
        result = app_ctx.entitlements.check_access(identity.uid, bundle_id)
        payload = {'hasAccess': result.has_access}
        if result.purchase is not None:
            payload['purchase'] = result.purchase.to_public_dict()
        return app_ctx.jsonify(payload)
    except EntitlementError as e:
        return error_response(app_ctx, e)
    except Exception as e:
        app_ctx.logger.error(f"Check access error: {e}")
        return app_ctx.jsonify({'error': 'Could not check access.', 'details': {}}), 500


def get_bundle_content(app_ctx, request, bundle_id):
    try:
        identity = app_ctx.require_identity(request)
        items = app_ctx.entitlements.get_unlocked_content(identity.uid, bundle_id)
        return app_ctx.jsonify({
            'bundleId': bundle_id,
            'items': [item.to_public_dict() for item in items],
            'totalItems': len(items),
        })
    except EntitlementError as e:
        return error_response(app_ctx, e)
    except Exception as e:
        app_ctx.logger.error(f"Bundle content error for {bundle_id}: {e}")
        return app_ctx.jsonify({'error': 'Could not load content.', 'details': {}}), 500
