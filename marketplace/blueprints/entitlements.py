from flask import Blueprint, current_app, request

from marketplace.extensions import get_app_ctx
from marketplace.services import entitlement_api_service

entitlements_bp = Blueprint('entitlements_api', __name__)


@entitlements_bp.route('/api/grant-access', methods=['POST'])
def grant_access():
    return entitlement_api_service.grant_access(get_app_ctx(current_app), request)


@entitlements_bp.route('/api/check-access', methods=['GET'])
def check_access():
    return entitlement_api_service.check_access(get_app_ctx(current_app), request)


@entitlements_bp.route('/api/bundles/<bundle_id>/content', methods=['GET'])
def bundle_content(bundle_id):
    return entitlement_api_service.get_bundle_content(get_app_ctx(current_app), request, bundle_id)
