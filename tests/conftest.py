import json
import os
import tempfile
from datetime import datetime

# Must be set before audit_log / encryption are imported
os.environ.setdefault('AUDIT_LOG_DIR', tempfile.mkdtemp(prefix='smartseek-audit-'))
os.environ.setdefault('ENCRYPTION_KEY', 'test-encryption-key')

import pytest

from app import create_app
from billing.db import get_db
from billing.ledger import ensure_profile
from billing.models import User, Role, Plan
from billing.providers.base import (
    PaymentProvider, PaymentIntentResult, SubscriptionResult, SubscriptionEvent, InvoiceEvent, CheckoutResult,
)
from billing.service import billing_service
from integrations.connector import set_connector
from sourcing.reports import ReportPipeline, set_pipeline


SAMPLE_REPORT = {
    'executiveSummary': 'Strong supplier base in Guangdong and Zhejiang.',
    'recommendations': ['Order samples from three suppliers'],
}


# =============================================================================
# FAKES
# =============================================================================

class FakePaymentProvider(PaymentProvider):
    """In-memory stand-in for Stripe. Signature 'valid' passes verification."""

    def __init__(self):
        self.intents = {}
        self.subscriptions = 0
        self.checkout_sessions = []
        # subscription id -> status the provider reports on retrieve
        self.remote_subscriptions = {}
        self.products = [
            {'id': 'prod_credits', 'name': 'SmartSeek Credits', 'prices': [
                {'id': 'price_credit', 'unit_amount': 1000, 'currency': 'usd', 'recurring': None},
            ]},
        ]

    @property
    def name(self):
        return 'stripe'

    @property
    def is_configured(self):
        return True

    @property
    def publishable_key(self):
        return 'pk_test_fake'

    def ensure_customer(self, email, user_id, customer_id=None):
        return customer_id or f'cus_{user_id}'

    def create_payment_intent(self, customer_id, amount_cents, currency, metadata):
        pi_id = f'pi_test_{len(self.intents) + 1}'
        self.intents[pi_id] = PaymentIntentResult(
            success=True,
            payment_intent_id=pi_id,
            client_secret=f'{pi_id}_secret',
            status='requires_payment_method',
            amount_cents=amount_cents,
            customer_id=customer_id,
            metadata=dict(metadata),
        )
        return self.intents[pi_id]

    def succeed(self, pi_id):
        self.intents[pi_id].status = 'succeeded'

    def retrieve_payment_intent(self, payment_intent_id):
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            return PaymentIntentResult(success=False, error='No such payment_intent')
        return intent

    def create_subscription(self, customer_id, price_id, metadata):
        self.subscriptions += 1
        return SubscriptionResult(
            success=True,
            subscription_id=f'sub_test_{self.subscriptions}',
            client_secret='seti_secret',
            status='incomplete',
        )

    def retrieve_subscription(self, subscription_id):
        status = self.remote_subscriptions.get(subscription_id)
        if status is None:
            return None
        return SubscriptionEvent('cus_remote', subscription_id, status, datetime(2030, 1, 1))

    def create_checkout_session(self, customer_id, mode, price_id, quantity, success_url, cancel_url, metadata):
        self.checkout_sessions.append({
            'customer_id': customer_id, 'mode': mode, 'price_id': price_id, 'quantity': quantity,
            'success_url': success_url, 'cancel_url': cancel_url, 'metadata': dict(metadata),
        })
        session_id = f'cs_test_{len(self.checkout_sessions)}'
        return CheckoutResult(True, f'https://checkout.test/{session_id}', session_id)

    def create_portal_session(self, customer_id, return_url):
        return CheckoutResult(True, f'https://billing.test/portal/{customer_id}?return={return_url}', 'bps_1')

    def list_products(self):
        return self.products

    def verify_webhook(self, payload, signature):
        if signature != 'valid':
            return False, None
        return True, json.loads(payload)

    def parse_payment_intent(self, event_data):
        obj = self.get_event_object(event_data)
        return PaymentIntentResult(
            success=True,
            payment_intent_id=obj.get('id'),
            status=obj.get('status'),
            customer_id=obj.get('customer'),
            metadata=obj.get('metadata') or {},
        )

    def parse_subscription(self, event_data):
        obj = self.get_event_object(event_data)
        if obj.get('object') == 'checkout.session':
            return SubscriptionEvent(obj.get('customer'), obj.get('subscription'), 'active')
        return SubscriptionEvent(obj.get('customer'), obj.get('id'), obj.get('status'))

    def parse_invoice(self, event_data):
        obj = self.get_event_object(event_data)
        return InvoiceEvent(obj.get('customer'), obj.get('subscription'), obj.get('billing_reason'))


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload or {})

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError('No JSON')
        return self._payload


class FakeSession:
    """requests.Session stand-in: replays queued responses (or raises queued exceptions)."""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def webhook_event(event_id, event_type, obj):
    return json.dumps({'id': event_id, 'type': event_type, 'data': {'object': obj}})


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def payment_provider():
    return FakePaymentProvider()


@pytest.fixture
def pipeline():
    return ReportPipeline(generator=lambda form: dict(SAMPLE_REPORT), executor=None, timeout=5)


@pytest.fixture
def app(payment_provider, pipeline):
    app = create_app({'TESTING': True, 'DATABASE_URL': 'sqlite://'})

    billing_service.set_provider(payment_provider)
    set_pipeline(pipeline)
    set_connector(None)

    yield app

    get_db().remove()
    set_pipeline(None)
    set_connector(None)
    billing_service._provider = None


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Create a user with a profile (2 free credits). Returns the user id."""
    counter = {'n': 0}

    def _make(email=None, verified=True, role=Role.BUYER, plan=Plan.FREE, password='secret1'):
        counter['n'] += 1
        db = get_db()
        user = User(email=email or f'user{counter["n"]}@example.com', email_verified=verified)
        user.set_password(password)
        db.add(user)
        db.commit()

        profile = ensure_profile(user.id)
        profile.role = role
        profile.plan = plan
        db.commit()
        return user.id

    return _make


@pytest.fixture
def login(client):
    """Log the test client in as a user id."""
    def _login(user_id):
        with client.session_transaction() as sess:
            sess['_user_id'] = str(user_id)
            sess['_fresh'] = True
    return _login
