import copy
import itertools
import json
import threading
from types import SimpleNamespace

import pytest
import stripe
from google.api_core import exceptions as gcp_exceptions
from google.cloud.firestore_v1.transforms import Increment

from marketplace import create_app
from marketplace.config import AppConfig
from marketplace.errors import NotFound
from marketplace.extensions import AppContext
from marketplace.logging_config import get_logger
from marketplace.services.payments_service import PaymentSnapshot


class FakeSnapshot:
    def __init__(self, doc_id, data, update_time):
        self.id = doc_id
        self._data = copy.deepcopy(data) if data is not None else None
        self.update_time = update_time

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeWriteOption:
    def __init__(self, last_update_time):
        self.last_update_time = last_update_time


class FakeDocumentRef:
    def __init__(self, db, collection_name, doc_id):
        self._db = db
        self._collection = collection_name
        self.id = doc_id

    def _docs(self):
        return self._db.store.setdefault(self._collection, {})

    def get(self, timeout=None, transaction=None):
        self._db.maybe_fail('get', self._collection)
        with self._db.lock:
            entry = self._docs().get(self.id)
            if entry is None:
                return FakeSnapshot(self.id, None, None)
            return FakeSnapshot(self.id, entry['data'], entry['update_time'])

    def create(self, data, timeout=None):
        self._db.maybe_fail('create', self._collection)
        with self._db.lock:
            if self.id in self._docs():
                raise gcp_exceptions.AlreadyExists(f"Document already exists: {self._collection}/{self.id}")
            self._docs()[self.id] = {'data': copy.deepcopy(data), 'update_time': self._db.tick()}
            self._db.writes.append(('create', self._collection, self.id))

    def set(self, data, merge=False, timeout=None):
        self._db.maybe_fail('set', self._collection)
        with self._db.lock:
            current = self._docs().get(self.id)
            merged = dict(current['data']) if (merge and current) else {}
            merged.update(copy.deepcopy(data))
            self._docs()[self.id] = {'data': merged, 'update_time': self._db.tick()}
            self._db.writes.append(('set', self._collection, self.id))

    def update(self, updates, option=None, timeout=None):
        self._db.maybe_fail('update', self._collection)
        with self._db.lock:
            current = self._docs().get(self.id)
            if current is None:
                raise gcp_exceptions.NotFound(f"No document to update: {self._collection}/{self.id}")
            if option is not None and option.last_update_time != current['update_time']:
                raise gcp_exceptions.FailedPrecondition('update_time mismatch')
            data = dict(current['data'])
            for key, value in updates.items():
                if isinstance(value, Increment):
                    data[key] = (data.get(key) or 0) + value.value
                else:
                    data[key] = value
            self._docs()[self.id] = {'data': data, 'update_time': self._db.tick()}
            self._db.writes.append(('update', self._collection, self.id))


class FakeQuery:
    def __init__(self, db, collection_name, filters=(), order=None, limit_count=None):
        self._db = db
        self._collection = collection_name
        self._filters = tuple(filters)
        self._order = order
        self._limit = limit_count

    def where(self, *args, **kwargs):
        field_filter = kwargs.get('filter')
        if field_filter is not None:
            clause = (field_filter.field_path, field_filter.op_string, field_filter.value)
        else:
            clause = tuple(args)
        return FakeQuery(self._db, self._collection, self._filters + (clause,), self._order, self._limit)

    def order_by(self, field_path, direction='ASCENDING'):
        return FakeQuery(self._db, self._collection, self._filters, (field_path, direction), self._limit)

    def limit(self, count):
        return FakeQuery(self._db, self._collection, self._filters, self._order, count)

    def stream(self, timeout=None, transaction=None):
        self._db.maybe_fail('query', self._collection)
        with self._db.lock:
            entries = list(self._db.store.get(self._collection, {}).items())
        matched = []
        for doc_id, entry in entries:
            data = entry['data']
            if all(op == '==' and data.get(field) == value for field, op, value in self._filters):
                matched.append(FakeSnapshot(doc_id, data, entry['update_time']))
        if self._order is not None:
            field_path, direction = self._order
            matched.sort(key=lambda snap: snap.to_dict().get(field_path) or 0, reverse=(direction == 'DESCENDING'))
        if self._limit is not None:
            matched = matched[:self._limit]
        return iter(matched)


class FakeCollection(FakeQuery):
    def __init__(self, db, collection_name):
        super().__init__(db, collection_name)

    def document(self, doc_id):
        return FakeDocumentRef(self._db, self._collection, doc_id)


class FakeFirestore:
    """In-memory stand-in honouring Firestore's conditional write semantics."""

    def __init__(self):
        self.store = {}
        self.writes = []
        self.lock = threading.RLock()
        self._clock = itertools.count(1)
        self.failures = {}

    def tick(self):
        return next(self._clock)

    def maybe_fail(self, op, collection_name):
        exc = self.failures.get((op, collection_name))
        if exc is not None:
            raise exc

    def collection(self, name):
        return FakeCollection(self, name)

    def write_option(self, last_update_time=None):
        return FakeWriteOption(last_update_time)

    def get_all(self, refs, timeout=None):
        for ref in refs:
            yield ref.get(timeout=timeout)

    def seed(self, collection_name, doc_id, data):
        with self.lock:
            self.store.setdefault(collection_name, {})[doc_id] = {'data': copy.deepcopy(data), 'update_time': self.tick()}

    def data(self, collection_name, doc_id):
        entry = self.store.get(collection_name, {}).get(doc_id)
        return copy.deepcopy(entry['data']) if entry else None

    def docs(self, collection_name):
        return {doc_id: copy.deepcopy(entry['data']) for doc_id, entry in self.store.get(collection_name, {}).items()}


class FakePayments:
    """Payment lookups keyed by reference, returning PaymentSnapshot tuples."""

    def __init__(self):
        self.payments = {}
        self.calls = []
        self.before_return = None

    def add(self, reference, *, paid=True, status=None, amount=1500, currency='usd', metadata=None):
        self.payments[reference] = PaymentSnapshot(
            reference=reference,
            kind='payment_intent' if reference.startswith('pi_') else 'checkout_session',
            status=status or ('paid' if paid else 'unpaid'),
            paid=paid,
            amount_total=amount,
            currency=currency,
            metadata=dict(metadata or {}),
        )

    def retrieve_payment(self, reference):
        self.calls.append(reference)
        if self.before_return is not None:
            self.before_return(reference)
        if reference not in self.payments:
            raise NotFound('Payment reference not found.', {'payment_reference': reference})
        return self.payments[reference]


class FakeCheckoutSessionAPI:
    def __init__(self, fake_stripe):
        self._stripe = fake_stripe

    def retrieve(self, session_id, **_kwargs):
        if self._stripe.error_on_retrieve is not None:
            raise self._stripe.error_on_retrieve
        if session_id not in self._stripe.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", 'id', code='resource_missing')
        return copy.deepcopy(self._stripe.sessions[session_id])

    def create(self, **params):
        self._stripe.created_sessions.append(params)
        session_id = f"cs_test_{len(self._stripe.created_sessions)}"
        session = {
            'id': session_id,
            'url': f"https://checkout.stripe.test/{session_id}",
            'payment_status': 'unpaid',
            'amount_total': params['line_items'][0]['price_data']['unit_amount'],
            'currency': params['line_items'][0]['price_data']['currency'],
            'metadata': dict(params.get('metadata') or {}),
        }
        self._stripe.sessions[session_id] = session
        return copy.deepcopy(session)


class FakePaymentIntentAPI:
    def __init__(self, fake_stripe):
        self._stripe = fake_stripe

    def retrieve(self, intent_id, **_kwargs):
        if intent_id not in self._stripe.intents:
            raise stripe.InvalidRequestError(f"No such payment_intent: '{intent_id}'", 'id', code='resource_missing')
        return copy.deepcopy(self._stripe.intents[intent_id])


class FakeWebhookAPI:
    @staticmethod
    def construct_event(payload, sig_header, secret):
        if sig_header != f"valid:{secret}":
            raise stripe.SignatureVerificationError('No signatures found matching the expected signature', sig_header)
        return json.loads(payload)


class FakeStripe:
    """Exposes the slice of the stripe module the app touches, with real error classes."""

    StripeError = stripe.StripeError
    InvalidRequestError = stripe.InvalidRequestError
    APIConnectionError = stripe.APIConnectionError
    APIError = stripe.APIError
    RateLimitError = stripe.RateLimitError
    SignatureVerificationError = stripe.SignatureVerificationError
    Webhook = FakeWebhookAPI

    def __init__(self):
        self.sessions = {}
        self.intents = {}
        self.created_sessions = []
        self.error_on_retrieve = None
        self.checkout = SimpleNamespace(Session=FakeCheckoutSessionAPI(self))
        self.PaymentIntent = FakePaymentIntentAPI(self)


class FakeAuth:
    def __init__(self, tokens):
        self.tokens = tokens

    def verify_id_token(self, token):
        if token not in self.tokens:
            raise ValueError('Invalid ID token')
        return dict(self.tokens[token])


class FakeTime:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def time(self):
        self.now += 1.0
        return self.now


BUYER_TOKEN = 'buyer-token'
OTHER_TOKEN = 'other-token'
CREATOR_TOKEN = 'creator-token'


def seed_marketplace(db):
    db.seed('users', 'creator-1', {
        'display_name': 'Studio Nova',
        'username': 'studionova',
        'stripe_account_id': 'acct_creator1',
    })
    db.seed('users', 'creator-2', {'display_name': 'No Stripe', 'username': 'nostripe'})
    db.seed('bundles', 'bundle-x', {
        'title': 'Lo-fi Sample Pack',
        'description': 'Forty loops and one-shots',
        'price': 1500,
        'currency': 'usd',
        'creator_id': 'creator-1',
        'content_items': ['item-2', 'item-1', 'item-missing'],
        'active': True,
    })
    db.seed('bundles', 'bundle-y', {
        'title': 'Drone Footage',
        'price': 2500,
        'currency': 'usd',
        'creator_id': 'creator-2',
        'content_items': [],
    })
    db.seed('uploads', 'item-1', {
        'title': 'Loop 01',
        'url': 'https://cdn.test/loop-01.wav',
        'mime_type': 'audio/wav',
        'size': 2048,
    })
    db.seed('uploads', 'item-2', {
        'filename': 'cover.png',
        'file_url': 'https://cdn.test/cover.png',
        'content_type': 'image/png',
        'file_size': 512,
    })


@pytest.fixture()
def fake_db():
    db = FakeFirestore()
    seed_marketplace(db)
    return db


@pytest.fixture()
def fake_payments():
    return FakePayments()


@pytest.fixture()
def fake_stripe():
    return FakeStripe()


@pytest.fixture()
def fake_time():
    return FakeTime()


@pytest.fixture()
def test_config():
    return AppConfig(
        flask_secret_key='test-secret',
        log_level='WARNING',
        site_url='https://market.test',
        sentry_dsn='',
        stripe_secret_key='sk_test_123',
        stripe_publishable_key='pk_test_123',
        stripe_webhook_secret='whsec_test',
        firestore_timeout_seconds=5.0,
        platform_fee_percent=10.0,
        checkout_rate_limit_window_seconds=600,
        checkout_rate_limit_max_requests=3,
        rate_limit_firestore_enabled=False,
    )


@pytest.fixture()
def app_ctx(test_config, fake_db, fake_stripe, fake_time):
    auth = FakeAuth({
        BUYER_TOKEN: {'uid': 'buyer-1', 'email': 'buyer@example.com'},
        OTHER_TOKEN: {'uid': 'buyer-2', 'email': 'other@example.com'},
        CREATOR_TOKEN: {'uid': 'creator-1', 'email': 'creator@example.com'},
    })
    return AppContext(
        config=test_config,
        db=fake_db,
        auth_module=auth,
        stripe_module=fake_stripe,
        firestore_module=None,
        logger=get_logger('tests'),
        time_module=fake_time,
    )


@pytest.fixture()
def client(test_config, app_ctx):
    app = create_app(config=test_config, app_ctx=app_ctx)
    app.config['TESTING'] = True
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture()
def auth_headers():
    def _headers(token=BUYER_TOKEN):
        return {"Authorization": f"Bearer {token}"}

    return _headers
