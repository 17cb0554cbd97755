"""Thin read-mostly wrapper around the Stripe SDK.

Every Stripe failure is translated into the entitlement error taxonomy so that
callers can tell a missing payment (NotFound) from a flaky upstream
(UpstreamUnavailable) without knowing Stripe's exception hierarchy.
"""

from collections import namedtuple

from marketplace.errors import EntitlementError, NotFound, UpstreamUnavailable

PAID_SESSION_STATUSES = {'paid'}
PAID_INTENT_STATUSES = {'succeeded'}

PaymentSnapshot = namedtuple(
    'PaymentSnapshot',
    ['reference', 'kind', 'status', 'paid', 'amount_total', 'currency', 'metadata'],
)


def read_field(obj, key, default=None):
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def metadata_dict(obj):
    raw = read_field(obj, 'metadata') or {}
    if isinstance(raw, dict):
        return {str(k): str(v or '') for k, v in raw.items()}
    to_dict = getattr(raw, 'to_dict', None)
    if callable(to_dict):
        return {str(k): str(v or '') for k, v in to_dict().items()}
    return {}


def reference_kind(reference):
    return 'payment_intent' if str(reference or '').startswith('pi_') else 'checkout_session'


def _snapshot_from_session(session):
    payment_status = str(read_field(session, 'payment_status', '') or '').lower()
    return PaymentSnapshot(
        reference=str(read_field(session, 'id', '') or ''),
        kind='checkout_session',
        status=payment_status,
        paid=payment_status in PAID_SESSION_STATUSES,
        amount_total=int(read_field(session, 'amount_total', 0) or 0),
        currency=str(read_field(session, 'currency', '') or '').lower(),
        metadata=metadata_dict(session),
    )


def _snapshot_from_intent(intent):
    status = str(read_field(intent, 'status', '') or '').lower()
    return PaymentSnapshot(
        reference=str(read_field(intent, 'id', '') or ''),
        kind='payment_intent',
        status=status,
        paid=status in PAID_INTENT_STATUSES,
        amount_total=int(read_field(intent, 'amount_received', 0) or read_field(intent, 'amount', 0) or 0),
        currency=str(read_field(intent, 'currency', '') or '').lower(),
        metadata=metadata_dict(intent),
    )


class PaymentsClient:
    def __init__(self, stripe_module, logger):
        self.stripe = stripe_module
        self.logger = logger

    def _translate(self, exc, reference):
        stripe = self.stripe
        if isinstance(exc, stripe.InvalidRequestError) and getattr(exc, 'code', '') == 'resource_missing':
            return NotFound('Payment reference not found.', {'payment_reference': reference})
        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
            self.logger.warning(f"Stripe unavailable while reading {reference}: {exc}")
            return UpstreamUnavailable(details={'upstream': 'stripe'})
        if isinstance(exc, stripe.InvalidRequestError):
            return NotFound('Payment reference not found.', {'payment_reference': reference})
        self.logger.error(f"Stripe error while reading {reference}: {exc}")
        return EntitlementError('Could not verify payment.')

    def retrieve_session(self, reference):
        try:
            session = self.stripe.checkout.Session.retrieve(reference)
        except self.stripe.StripeError as exc:
            raise self._translate(exc, reference) from exc
        return _snapshot_from_session(session)

    def retrieve_payment_intent(self, reference):
        try:
            intent = self.stripe.PaymentIntent.retrieve(reference)
        except self.stripe.StripeError as exc:
            raise self._translate(exc, reference) from exc
        return _snapshot_from_intent(intent)

    def retrieve_payment(self, reference):
        if reference_kind(reference) == 'payment_intent':
            return self.retrieve_payment_intent(reference)
        return self.retrieve_session(reference)

    def create_bundle_checkout_session(self, *, bundle, buyer, destination_account, fee_percent, success_url, cancel_url):
        """Destination charge: the creator is paid, the platform keeps the fee."""
        application_fee = int(round(bundle.price * float(fee_percent) / 100.0))
        metadata = {
            'bundle_id': bundle.id,
            'buyer_id': buyer.uid,
            'creator_id': bundle.creator_id,
        }
        product_data = {'name': bundle.title}
        if bundle.description:
            product_data['description'] = bundle.description[:500]
        params = {
            'mode': 'payment',
            'line_items': [{
                'price_data': {
                    'currency': bundle.currency,
                    'product_data': product_data,
                    'unit_amount': bundle.price,
                },
                'quantity': 1,
            }],
            'payment_intent_data': {
                'application_fee_amount': application_fee,
                'transfer_data': {'destination': destination_account},
                'metadata': metadata,
            },
            'client_reference_id': buyer.uid,
            'success_url': success_url,
            'cancel_url': cancel_url,
            'metadata': metadata,
        }
        if buyer.email:
            params['customer_email'] = buyer.email
        try:
            return self.stripe.checkout.Session.create(**params)
        except self.stripe.StripeError as exc:
            raise self._translate(exc, 'new_checkout_session') from exc

    def construct_webhook_event(self, payload, sig_header, secret):
        return self.stripe.Webhook.construct_event(payload, sig_header, secret)
