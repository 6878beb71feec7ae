"""
billing/providers/stripe_provider.py

Stripe implementation of PaymentProvider.

This is the ONLY file that imports the stripe library.
All Stripe-specific logic is contained here.

Supports:
    - Customers (one per profile, stored on UserProfile.stripe_customer_id)
    - Payment Intents for credit purchases
    - Embedded subscriptions (default_incomplete + client secret)
    - Hosted Checkout (credits and subscriptions) and the billing portal
    - Webhook signature verification

Stripe Dashboard Setup Required:
    1. Create the Pro plan price and set STRIPE_PRO_PRICE_ID
    2. Enable webhooks pointing to /api/stripe/webhook
    3. Subscribe to: payment_intent.succeeded, checkout.session.completed,
       customer.subscription.created/updated/deleted, invoice.paid

Version History:
    2026-01-12: Payment intents and subscriptions for SmartSeek
"""

import json
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, List

import stripe

from billing.providers.base import (
    PaymentProvider, PaymentIntentResult, SubscriptionResult,
    SubscriptionEvent, InvoiceEvent, CheckoutResult,
)
from billing.config import (
    STRIPE_SECRET_KEY,
    STRIPE_PUBLISHABLE_KEY,
    STRIPE_WEBHOOK_SECRET,
)
from errors import RequestFailed


# Configure Stripe
stripe.api_key = STRIPE_SECRET_KEY


def _from_timestamp(value) -> Optional[datetime]:
    """Stripe epoch seconds -> naive UTC datetime."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _subscription_event(obj) -> SubscriptionEvent:
    period_end = obj.get('current_period_end')
    if period_end is None:
        # Newer API versions moved the period onto subscription items
        items = (obj.get('items') or {}).get('data') or []
        if items:
            period_end = items[0].get('current_period_end')

    return SubscriptionEvent(
        customer_id=obj.get('customer'),
        subscription_id=obj.get('id'),
        status=obj.get('status'),
        current_period_end=_from_timestamp(period_end),
    )


class StripeProvider(PaymentProvider):
    """Stripe payment provider implementation."""

    def __init__(self, secret_key: str = STRIPE_SECRET_KEY,
                 publishable_key: str = STRIPE_PUBLISHABLE_KEY,
                 webhook_secret: str = STRIPE_WEBHOOK_SECRET):
        self._secret_key = secret_key
        self._publishable_key = publishable_key
        self._webhook_secret = webhook_secret

    @property
    def name(self) -> str:
        return 'stripe'

    @property
    def is_configured(self) -> bool:
        return bool(self._secret_key and self._publishable_key)

    @property
    def publishable_key(self) -> str:
        return self._publishable_key

    def ensure_customer(self, email: str, user_id: int, customer_id: Optional[str] = None) -> str:
        if customer_id:
            return customer_id

        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={'user_id': str(user_id)},
                api_key=self._secret_key,
            )
        except stripe.StripeError as e:
            print(f"[Stripe] Customer create error: {e}")
            raise RequestFailed('Payment provider error')

        print(f"[Stripe] Created customer {customer.id} for user {user_id}")
        return customer.id

    def create_payment_intent(
        self,
        customer_id: str,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str]
    ) -> PaymentIntentResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                metadata=metadata,
                automatic_payment_methods={'enabled': True},
                api_key=self._secret_key,
            )
        except stripe.StripeError as e:
            print(f"[Stripe] Payment intent error: {e}")
            return PaymentIntentResult(success=False, error=str(e))

        return self._intent_result(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self._secret_key)
        except stripe.InvalidRequestError as e:
            print(f"[Stripe] Payment intent not found: {payment_intent_id}")
            return PaymentIntentResult(success=False, error=str(e))
        except stripe.StripeError as e:
            print(f"[Stripe] Payment intent retrieve error: {e}")
            raise RequestFailed('Payment provider error')

        return self._intent_result(intent)

    def _intent_result(self, intent) -> PaymentIntentResult:
        return PaymentIntentResult(
            success=True,
            payment_intent_id=intent.get('id'),
            client_secret=intent.get('client_secret'),
            status=intent.get('status'),
            amount_cents=intent.get('amount'),
            customer_id=intent.get('customer'),
            metadata=dict(intent.get('metadata') or {}),
        )

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str]
    ) -> SubscriptionResult:
        """
        Create a subscription that stays incomplete until the embedded
        payment element confirms its first invoice.
        """
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{'price': price_id}],
                payment_behavior='default_incomplete',
                payment_settings={'save_default_payment_method': 'on_subscription'},
                expand=['latest_invoice.payment_intent'],
                metadata=metadata,
                api_key=self._secret_key,
            )
        except stripe.StripeError as e:
            print(f"[Stripe] Subscription create error: {e}")
            return SubscriptionResult(success=False, error=str(e))

        invoice = subscription.get('latest_invoice') or {}
        payment_intent = invoice.get('payment_intent') or {}

        return SubscriptionResult(
            success=True,
            subscription_id=subscription.get('id'),
            client_secret=payment_intent.get('client_secret'),
            status=subscription.get('status'),
        )

    def retrieve_subscription(self, subscription_id: str) -> Optional[SubscriptionEvent]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._secret_key)
        except stripe.InvalidRequestError:
            print(f"[Stripe] Subscription not found: {subscription_id}")
            return None
        except stripe.StripeError as e:
            print(f"[Stripe] Subscription retrieve error: {e}")
            raise RequestFailed('Payment provider error')

        return _subscription_event(subscription)

    def create_checkout_session(
        self,
        customer_id: str,
        mode: str,
        price_id: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str]
    ) -> CheckoutResult:
        session_params = {
            'customer': customer_id,
            'mode': mode,
            'line_items': [{'price': price_id, 'quantity': quantity}],
            'success_url': success_url,
            'cancel_url': cancel_url,
            'metadata': metadata,
        }
        if mode == 'payment':
            # payment_intent.succeeded only sees the intent's own metadata
            session_params['payment_intent_data'] = {'metadata': metadata}

        try:
            session = stripe.checkout.Session.create(api_key=self._secret_key, **session_params)
        except stripe.StripeError as e:
            print(f"[Stripe] Checkout session error: {e}")
            return CheckoutResult(success=False, error=str(e))

        print(f"[Stripe] Created {mode} checkout session {session.id} for {customer_id}")
        return CheckoutResult(
            success=True,
            checkout_url=session.url,
            provider_session_id=session.id,
        )

    def create_portal_session(self, customer_id: str, return_url: str) -> CheckoutResult:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
                api_key=self._secret_key,
            )
        except stripe.StripeError as e:
            print(f"[Stripe] Portal session error: {e}")
            return CheckoutResult(success=False, error=str(e))

        return CheckoutResult(success=True, checkout_url=session.url, provider_session_id=session.id)

    def list_products(self) -> List[dict]:
        try:
            products = stripe.Product.list(active=True, limit=100, api_key=self._secret_key)
            prices = stripe.Price.list(active=True, limit=100, api_key=self._secret_key)
        except stripe.StripeError as e:
            print(f"[Stripe] Product list error: {e}")
            raise RequestFailed('Payment provider error')

        by_product = {}
        for price in prices.auto_paging_iter():
            product_id = price.get('product')
            by_product.setdefault(product_id, []).append({
                'id': price.get('id'),
                'unit_amount': price.get('unit_amount'),
                'currency': price.get('currency'),
                'recurring': price.get('recurring'),
                'active': price.get('active'),
                'metadata': dict(price.get('metadata') or {}),
            })

        return [
            {
                'id': product.get('id'),
                'name': product.get('name'),
                'description': product.get('description'),
                'active': product.get('active'),
                'metadata': dict(product.get('metadata') or {}),
                'prices': by_product.get(product.get('id'), []),
            }
            for product in products.auto_paging_iter()
        ]

    def verify_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Tuple[bool, Optional[dict]]:
        """
        Verify Stripe webhook signature.

        Unsigned events are rejected when no webhook secret is configured.

        Returns:
            (is_valid, event_dict)
        """
        if not self._webhook_secret:
            print("[Stripe] WARNING: Webhook secret not configured, rejecting event")
            return False, None

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            print(f"[Stripe] Webhook signature verification failed: {e}")
            return False, None
        except ValueError as e:
            print(f"[Stripe] Webhook parse error: {e}")
            return False, None

        return True, json.loads(payload)

    def parse_payment_intent(self, event_data: dict) -> PaymentIntentResult:
        intent = self.get_event_object(event_data)
        return PaymentIntentResult(
            success=True,
            payment_intent_id=intent.get('id'),
            status=intent.get('status'),
            amount_cents=intent.get('amount'),
            customer_id=intent.get('customer'),
            metadata=dict(intent.get('metadata') or {}),
        )

    def parse_subscription(self, event_data: dict) -> SubscriptionEvent:
        obj = self.get_event_object(event_data)

        if obj.get('object') == 'checkout.session':
            # Subscription checkout: the session carries the subscription id
            return SubscriptionEvent(
                customer_id=obj.get('customer'),
                subscription_id=obj.get('subscription'),
                status='active',
            )

        return _subscription_event(obj)

    def parse_invoice(self, event_data: dict) -> InvoiceEvent:
        invoice = self.get_event_object(event_data)

        subscription_id = invoice.get('subscription')
        if subscription_id is None:
            details = (invoice.get('parent') or {}).get('subscription_details') or {}
            subscription_id = details.get('subscription')

        return InvoiceEvent(
            customer_id=invoice.get('customer'),
            subscription_id=subscription_id,
            billing_reason=invoice.get('billing_reason'),
            period_end=_from_timestamp(invoice.get('period_end')),
        )


# Singleton instance
_stripe_provider = None


def get_stripe_provider() -> StripeProvider:
    """Get or create Stripe provider instance."""
    global _stripe_provider
    if _stripe_provider is None:
        _stripe_provider = StripeProvider()
    return _stripe_provider
