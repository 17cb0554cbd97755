from flask import Blueprint, current_app, request

from marketplace.extensions import get_app_ctx
from marketplace.services import payments_api_service

payments_bp = Blueprint('payments_api', __name__)


@payments_bp.route('/api/config', methods=['GET'])
def get_config():
    return payments_api_service.get_config(get_app_ctx(current_app))


@payments_bp.route('/api/create-checkout-session', methods=['POST'])
def create_checkout_session():
    return payments_api_service.create_checkout_session(get_app_ctx(current_app), request)


@payments_bp.route('/api/stripe-webhook', methods=['POST'])
def stripe_webhook():
    return payments_api_service.stripe_webhook(get_app_ctx(current_app), request)


@payments_bp.route('/api/purchase-history', methods=['GET'])
def purchase_history():
    return payments_api_service.get_purchase_history(get_app_ctx(current_app), request)
