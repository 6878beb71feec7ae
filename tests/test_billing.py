from billing.db import get_db
from billing.ledger import get_balance, get_transactions, reconcile
from billing.models import UserProfile, PaymentEvent, TransactionType
from billing.service import billing_service
from conftest import webhook_event


def buy(client, payment_provider, quantity):
    response = client.post('/api/stripe/create-payment-intent', json={'quantity': quantity})
    assert response.status_code == 200
    pi_id = response.get_json()['paymentIntentId']
    payment_provider.succeed(pi_id)
    return pi_id


def post_webhook(client, payload, signature='valid'):
    return client.post(
        '/api/stripe/webhook',
        data=payload,
        headers={'Stripe-Signature': signature},
        content_type='application/json',
    )


def test_stripe_config(client):
    assert client.get('/api/stripe/config').get_json() == {'publishableKey': 'pk_test_fake'}


def test_create_payment_intent_prices_credits(client, make_user, login):
    login(make_user())

    data = client.post('/api/stripe/create-payment-intent', json={'quantity': 5}).get_json()

    assert data['credits'] == 5
    assert data['amount'] == 5000
    assert data['clientSecret'].endswith('_secret')


def test_payment_intent_quantity_bounds(client, make_user, login):
    login(make_user())

    assert client.post('/api/stripe/create-payment-intent', json={'quantity': 0}).status_code == 400
    assert client.post('/api/stripe/create-payment-intent', json={'quantity': 101}).status_code == 400
    assert client.post('/api/stripe/create-payment-intent', json={'quantity': 'many'}).status_code == 400


def test_unverified_user_cannot_buy(client, make_user, login):
    login(make_user(verified=False))

    response = client.post('/api/stripe/create-payment-intent', json={'quantity': 1})

    assert response.status_code == 403
    assert response.get_json()['code'] == 'EMAIL_NOT_VERIFIED'


def test_confirm_payment_tops_up_once(client, make_user, login, payment_provider):
    user_id = make_user()
    login(user_id)
    pi_id = buy(client, payment_provider, 3)

    first = client.post('/api/stripe/confirm-payment', json={'paymentIntentId': pi_id}).get_json()
    second = client.post('/api/stripe/confirm-payment', json={'paymentIntentId': pi_id}).get_json()

    assert first == {'success': True, 'credits': 3, 'balance': 5, 'alreadyProcessed': False}
    assert second['alreadyProcessed'] is True
    assert second['balance'] == 5
    assert get_balance(user_id) == 5

    topup = get_transactions(user_id)[0]
    assert topup.type == TransactionType.TOPUP
    assert topup.description == 'Purchased 3 credit(s)'
    assert topup.reference == pi_id


def test_confirm_then_webhook_tops_up_once(client, make_user, login, payment_provider):
    user_id = make_user()
    login(user_id)
    pi_id = buy(client, payment_provider, 2)

    client.post('/api/stripe/confirm-payment', json={'paymentIntentId': pi_id})

    intent = payment_provider.intents[pi_id]
    payload = webhook_event('evt_1', 'payment_intent.succeeded', {
        'id': pi_id, 'status': 'succeeded', 'customer': intent.customer_id, 'metadata': intent.metadata,
    })
    response = post_webhook(client, payload)

    assert response.status_code == 200
    assert response.get_json()['duplicate'] is False
    assert get_balance(user_id) == 4
    assert reconcile(user_id) == (4, 4)


def test_webhook_redelivery_is_ignored(client, make_user, login, payment_provider):
    user_id = make_user()
    login(user_id)
    pi_id = buy(client, payment_provider, 1)
    intent = payment_provider.intents[pi_id]
    payload = webhook_event('evt_2', 'payment_intent.succeeded', {
        'id': pi_id, 'status': 'succeeded', 'customer': intent.customer_id, 'metadata': intent.metadata,
    })

    assert post_webhook(client, payload).get_json()['duplicate'] is False
    assert post_webhook(client, payload).get_json()['duplicate'] is True
    assert get_balance(user_id) == 3

    confirmed = client.post('/api/stripe/confirm-payment', json={'paymentIntentId': pi_id}).get_json()
    assert confirmed['alreadyProcessed'] is True
    assert get_balance(user_id) == 3


def test_confirm_payment_errors(client, make_user, login, payment_provider):
    owner = make_user()
    other = make_user()
    login(owner)
    pi_id = client.post('/api/stripe/create-payment-intent', json={'quantity': 1}).get_json()['paymentIntentId']

    response = client.post('/api/stripe/confirm-payment', json={'paymentIntentId': pi_id})
    assert response.status_code == 400
    assert response.get_json() == {
        'error': 'Payment not completed', 'code': 'PAYMENT_INCOMPLETE', 'status': 'requires_payment_method',
    }

    assert client.post('/api/stripe/confirm-payment', json={}).status_code == 400
    assert client.post('/api/stripe/confirm-payment', json={'paymentIntentId': 'pi_missing'}).status_code == 404

    payment_provider.succeed(pi_id)
    login(other)
    assert client.post('/api/stripe/confirm-payment', json={'paymentIntentId': pi_id}).status_code == 403
    assert get_balance(owner) == 2


def test_webhook_rejects_bad_signature(client):
    response = post_webhook(client, webhook_event('evt_x', 'invoice.paid', {}), signature='forged')

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid signature'


def test_subscription_lifecycle(client, make_user, login):
    user_id = make_user()
    login(user_id)

    created = client.post('/api/stripe/create-embedded-subscription', json={'priceId': 'price_pro'}).get_json()
    assert created == {'clientSecret': 'seti_secret', 'subscriptionId': 'sub_test_1'}

    customer = f'cus_{user_id}'
    subscription = {'id': 'sub_test_1', 'customer': customer, 'status': 'active'}

    post_webhook(client, webhook_event('evt_s1', 'customer.subscription.created', subscription))
    profile = get_db().get(UserProfile, user_id)
    assert profile.plan == 'pro'
    assert profile.next_refill_date is not None
    assert get_balance(user_id) == 12

    # Already pro: no second grant
    post_webhook(client, webhook_event('evt_s2', 'customer.subscription.updated', subscription))
    assert get_balance(user_id) == 12

    post_webhook(client, webhook_event('evt_i1', 'invoice.paid', {
        'customer': customer, 'subscription': 'sub_test_1', 'billing_reason': 'subscription_cycle',
    }))
    assert get_balance(user_id) == 22

    # First invoice of a subscription is not a refill
    post_webhook(client, webhook_event('evt_i2', 'invoice.paid', {
        'customer': customer, 'subscription': 'sub_test_1', 'billing_reason': 'subscription_create',
    }))
    assert get_balance(user_id) == 22

    post_webhook(client, webhook_event('evt_s3', 'customer.subscription.deleted', dict(subscription, status=None)))
    get_db().expire_all()
    profile = get_db().get(UserProfile, user_id)
    assert profile.plan == 'free'
    assert profile.subscription_status == 'canceled'
    assert get_balance(user_id) == 22
    assert reconcile(user_id) == (22, 22)

    types = [e.type for e in get_transactions(user_id)]
    assert types.count(TransactionType.SUBSCRIPTION) == 2


def test_checkout_session_credit_purchase(client, make_user, login):
    user_id = make_user()
    login(user_id)

    payload = webhook_event('evt_c1', 'checkout.session.completed', {
        'object': 'checkout.session',
        'id': 'cs_1',
        'mode': 'payment',
        'payment_intent': 'pi_checkout_1',
        'customer': None,
        'metadata': {'type': 'credit_purchase', 'credits': '4', 'user_id': str(user_id)},
    })

    post_webhook(client, payload)
    post_webhook(client, payload)

    assert get_balance(user_id) == 6


def test_failed_webhook_is_processed_on_redelivery(client, make_user, login, payment_provider, monkeypatch):
    user_id = make_user()
    login(user_id)
    pi_id = buy(client, payment_provider, 3)
    intent = payment_provider.intents[pi_id]
    payload = webhook_event('evt_retry', 'payment_intent.succeeded', {
        'id': pi_id, 'status': 'succeeded', 'customer': intent.customer_id, 'metadata': intent.metadata,
    })

    real_handler = billing_service._handle_payment_intent_succeeded
    calls = []

    def fails_once(event_data):
        calls.append(event_data['id'])
        if len(calls) == 1:
            raise RuntimeError('database went away')
        return real_handler(event_data)

    monkeypatch.setattr(billing_service, '_handle_payment_intent_succeeded', fails_once)

    assert post_webhook(client, payload).status_code == 500
    assert get_balance(user_id) == 2

    stored = get_db().query(PaymentEvent).filter_by(provider_event_id='evt_retry').one()
    assert stored.processed is False
    assert 'database went away' in stored.error_message

    retried = post_webhook(client, payload)
    assert retried.status_code == 200
    assert retried.get_json()['duplicate'] is False
    assert get_balance(user_id) == 5

    assert post_webhook(client, payload).get_json()['duplicate'] is True
    assert get_balance(user_id) == 5
    assert len(calls) == 2
    assert reconcile(user_id) == (5, 5)


# =============================================================================
# HOSTED CHECKOUT, PORTAL AND SYNC
# =============================================================================

def test_products_are_listed_without_login(client):
    products = client.get('/api/stripe/products').get_json()

    assert products[0]['id'] == 'prod_credits'
    assert products[0]['prices'][0]['unit_amount'] == 1000


def test_credit_checkout_carries_purchase_metadata(client, make_user, login, payment_provider):
    user_id = make_user()
    login(user_id)

    response = client.post('/api/stripe/create-credit-checkout', json={'priceId': 'price_credit', 'quantity': 4})

    assert response.get_json() == {'url': 'https://checkout.test/cs_test_1'}
    session = payment_provider.checkout_sessions[0]
    assert session['mode'] == 'payment'
    assert session['quantity'] == 4
    assert session['customer_id'] == f'cus_{user_id}'
    assert session['metadata'] == {'type': 'credit_purchase', 'credits': '4', 'user_id': str(user_id)}
    assert session['success_url'] == 'http://localhost/billing?success=credits&quantity=4'
    assert session['cancel_url'] == 'http://localhost/billing?canceled=true'

    assert client.post('/api/stripe/create-credit-checkout', json={'quantity': 4}).status_code == 400
    assert client.post('/api/stripe/create-credit-checkout',
                       json={'priceId': 'price_credit', 'quantity': 500}).status_code == 400
    assert len(payment_provider.checkout_sessions) == 1


def test_subscription_checkout(client, make_user, login, payment_provider):
    login(make_user())

    response = client.post('/api/stripe/create-subscription-checkout', json={'priceId': 'price_pro'})

    assert response.status_code == 200
    session = payment_provider.checkout_sessions[0]
    assert session['mode'] == 'subscription'
    assert session['price_id'] == 'price_pro'
    assert session['quantity'] == 1
    assert session['success_url'] == 'http://localhost/billing?success=subscription'


def test_checkout_requires_verified_email(client, make_user, login):
    login(make_user(verified=False))

    assert client.post('/api/stripe/create-subscription-checkout', json={'priceId': 'price_pro'}).status_code == 403
    assert client.post('/api/stripe/create-credit-checkout', json={'priceId': 'price_credit'}).status_code == 403


def test_portal_needs_an_existing_customer(client, make_user, login):
    user_id = make_user()
    login(user_id)

    response = client.post('/api/stripe/create-portal-session')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'No Stripe customer found'

    client.post('/api/stripe/create-payment-intent', json={'quantity': 1})

    url = client.post('/api/stripe/create-portal-session').get_json()['url']
    assert url == f'https://billing.test/portal/cus_{user_id}?return=http://localhost/billing'


def test_sync_subscription_grants_on_activation_only(client, make_user, login, payment_provider):
    user_id = make_user()
    login(user_id)

    assert client.post('/api/stripe/sync-subscription').get_json() == {'subscription': None}

    client.post('/api/stripe/create-embedded-subscription', json={'priceId': 'price_pro'})
    payment_provider.remote_subscriptions['sub_test_1'] = 'active'

    synced = client.post('/api/stripe/sync-subscription').get_json()
    assert synced == {'subscription': {
        'id': 'sub_test_1', 'status': 'active', 'currentPeriodEnd': '2030-01-01T00:00:00', 'plan': 'pro',
    }}
    assert get_balance(user_id) == 12

    client.post('/api/stripe/sync-subscription')
    post_webhook(client, webhook_event('evt_late', 'customer.subscription.created', {
        'id': 'sub_test_1', 'customer': f'cus_{user_id}', 'status': 'active',
    }))
    assert get_balance(user_id) == 12

    payment_provider.remote_subscriptions['sub_test_1'] = 'canceled'
    assert client.post('/api/stripe/sync-subscription').get_json()['subscription']['plan'] == 'free'

    get_db().expire_all()
    profile = get_db().get(UserProfile, user_id)
    assert profile.plan == 'free'
    assert profile.next_refill_date is None
    assert reconcile(user_id) == (12, 12)


def test_portal_and_sync_require_login(client):
    assert client.post('/api/stripe/create-portal-session').status_code == 401
    assert client.post('/api/stripe/sync-subscription').status_code == 401
