"""
billing/service.py

BillingService - the main interface for payment operations.

Routes call BillingService, never the payment provider directly.
Every credit change goes through billing.ledger.

Usage:
    from billing.service import billing_service

    # Start a credit purchase
    result = billing_service.create_payment_intent(user_id=user.id, quantity=5)
    # -> {'clientSecret': ..., 'paymentIntentId': ..., 'credits': 5, 'amount': 5000}

    # After the client confirms the payment
    billing_service.confirm_payment(user.id, payment_intent_id)

    # Handle webhook (in route)
    billing_service.handle_webhook(request.data, request.headers.get('Stripe-Signature'))

Idempotency:
    A credit purchase is recorded as a PaymentEvent keyed by its payment
    intent id. confirm-payment, payment_intent.succeeded and a payment-mode
    checkout.session.completed all claim the same key, so whichever arrives
    first tops up and the others are no-ops.

Version History:
    2026-01-12: Payment intents, subscriptions and ledger top-ups
"""

from datetime import timedelta
from typing import Optional, Dict, Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from audit_log import audit, AuditEvent
from billing.config import (
    CREDIT_PRICE_CENTS, CREDIT_CURRENCY,
    MIN_CREDITS_PER_PURCHASE, MAX_CREDITS_PER_PURCHASE,
    MONTHLY_CREDITS, SUBSCRIPTION_PERIOD_DAYS, ACTIVE_SUBSCRIPTION_STATUSES,
    STRIPE_PRO_PRICE_ID,
)
from billing.db import get_db, utcnow
from billing.ledger import add_credits, ensure_profile, get_balance
from billing.models import User, UserProfile, PaymentEvent, TransactionType, Plan
from billing.providers import get_stripe_provider, PaymentProvider, PaymentIntentResult
from errors import (
    NotConfigured, ValidationError, NotFound, Forbidden, PaymentIncomplete, RequestFailed,
)


CREDIT_PURCHASE = 'credit_purchase'


def purchase_description(credits: int) -> str:
    return f'Purchased {credits} credit(s)'


class BillingService:
    """
    Main billing service - coordinates payments, plans and credits.

    Design:
        1. App calls BillingService methods
        2. BillingService delegates to PaymentProvider
        3. Confirmations and webhooks grant credits through the ledger
    """

    def __init__(self, provider: Optional[PaymentProvider] = None):
        self._provider = provider

    @property
    def provider(self) -> PaymentProvider:
        """Get active payment provider."""
        if self._provider is None:
            self._provider = get_stripe_provider()
        return self._provider

    def set_provider(self, provider: PaymentProvider):
        """Switch payment provider (tests install a fake here)."""
        self._provider = provider
        print(f"[Billing] Provider switched to: {provider.name}")

    def _require_configured(self):
        if not self.provider.is_configured:
            raise NotConfigured('Payments are not configured')

    # =========================================================================
    # CLIENT CONFIG
    # =========================================================================

    def get_config(self) -> Dict[str, Any]:
        self._require_configured()
        return {'publishableKey': self.provider.publishable_key}

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    def _ensure_customer(self, user_id: int) -> UserProfile:
        """Profile with a provider customer id, creating the customer once."""
        db = get_db()

        profile = ensure_profile(user_id)
        if profile.stripe_customer_id:
            return profile

        user = db.get(User, user_id)
        email = user.email if user else f'user-{user_id}@smartseek.app'

        profile.stripe_customer_id = self.provider.ensure_customer(email, user_id)
        db.commit()
        return profile

    def _profile_for_customer(self, customer_id: Optional[str]) -> Optional[UserProfile]:
        if not customer_id:
            return None
        return get_db().query(UserProfile).filter_by(stripe_customer_id=customer_id).first()

    # =========================================================================
    # CREDIT PURCHASES
    # =========================================================================

    def _parse_quantity(self, quantity: Any) -> int:
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError('Quantity must be a whole number')

        if not MIN_CREDITS_PER_PURCHASE <= quantity <= MAX_CREDITS_PER_PURCHASE:
            raise ValidationError(
                f'Quantity must be between {MIN_CREDITS_PER_PURCHASE} and {MAX_CREDITS_PER_PURCHASE}'
            )
        return quantity

    def create_payment_intent(self, user_id: int, quantity: Any = 1) -> Dict[str, Any]:
        """
        Create a payment intent for buying credits.

        Args:
            user_id: Buyer
            quantity: Number of credits (1..100)

        Returns:
            {'clientSecret', 'paymentIntentId', 'credits', 'amount'}
        """
        self._require_configured()

        quantity = self._parse_quantity(quantity)
        profile = self._ensure_customer(user_id)
        amount = quantity * CREDIT_PRICE_CENTS

        result = self.provider.create_payment_intent(
            customer_id=profile.stripe_customer_id,
            amount_cents=amount,
            currency=CREDIT_CURRENCY,
            metadata={
                'type': CREDIT_PURCHASE,
                'credits': str(quantity),
                'user_id': str(user_id),
            },
        )

        if not result.success:
            raise RequestFailed(result.error or 'Failed to create payment intent')

        print(f"[Billing] Payment intent {result.payment_intent_id} for user {user_id}: {quantity} credit(s)")

        return {
            'clientSecret': result.client_secret,
            'paymentIntentId': result.payment_intent_id,
            'credits': quantity,
            'amount': amount,
        }

    def confirm_payment(self, user_id: int, payment_intent_id: str) -> Dict[str, Any]:
        """
        Top up credits for a succeeded payment intent.

        Raises:
            ValidationError: missing id
            NotFound: unknown payment intent
            Forbidden: intent belongs to someone else
            PaymentIncomplete: intent has not succeeded
        """
        if not payment_intent_id:
            raise ValidationError('Payment intent ID required')

        self._require_configured()

        intent = self.provider.retrieve_payment_intent(payment_intent_id)
        if not intent.success:
            raise NotFound('Payment not found')

        owner = intent.metadata.get('user_id')
        if owner is not None and owner != str(user_id):
            raise Forbidden('Payment belongs to another user')

        if intent.status != 'succeeded':
            raise PaymentIncomplete(intent.status or 'unknown')

        return self._fulfil_credit_purchase(intent, user_id=user_id)

    def _fulfil_credit_purchase(self, intent: PaymentIntentResult, user_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Grant the credits recorded on a succeeded payment intent, once.

        The PaymentEvent insert and the top-up commit together, so a crash
        in between leaves neither behind.
        """
        db = get_db()

        if user_id is None:
            try:
                user_id = int(intent.metadata.get('user_id'))
            except (TypeError, ValueError):
                profile = self._profile_for_customer(intent.customer_id)
                if profile is None:
                    print(f"[Billing] No user for payment intent {intent.payment_intent_id}")
                    return {'success': False, 'credits': 0}
                user_id = profile.user_id

        try:
            credits = int(intent.metadata.get('credits') or 1)
        except (TypeError, ValueError):
            credits = 1

        already_fulfilled = {
            'success': True,
            'credits': credits,
            'alreadyProcessed': True,
        }

        # Checked first so a webhook's own pending PaymentEvent is not rolled back
        if self._find_event(intent.payment_intent_id) is not None:
            print(f"[Billing] Payment {intent.payment_intent_id} already fulfilled")
            return {**already_fulfilled, 'balance': get_balance(user_id)}

        payment_event = PaymentEvent(
            provider=self.provider.name,
            provider_event_id=intent.payment_intent_id,
            event_type=CREDIT_PURCHASE,
            payload_json={'user_id': user_id, 'credits': credits},
            processed=True,
            processed_at=utcnow(),
        )

        try:
            db.add(payment_event)
            db.flush()
        except IntegrityError:
            db.rollback()
            print(f"[Billing] Payment {intent.payment_intent_id} fulfilled concurrently")
            return {**already_fulfilled, 'balance': get_balance(user_id)}

        entry = add_credits(
            user_id,
            credits,
            TransactionType.TOPUP,
            purchase_description(credits),
            reference=intent.payment_intent_id,
        )

        audit.log_event(
            AuditEvent.PAYMENT_CONFIRMED,
            user_id=user_id,
            details={'credits': credits, 'event_id': intent.payment_intent_id},
        )

        return {
            'success': True,
            'credits': credits,
            'balance': entry.balance_after,
            'alreadyProcessed': False,
        }

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def create_embedded_subscription(self, user_id: int, price_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create an incomplete Pro subscription for the embedded payment form.

        Returns:
            {'clientSecret', 'subscriptionId'}
        """
        self._require_configured()

        price_id = price_id or STRIPE_PRO_PRICE_ID
        if not price_id:
            raise ValidationError('Price ID required')

        db = get_db()
        profile = self._ensure_customer(user_id)

        result = self.provider.create_subscription(
            customer_id=profile.stripe_customer_id,
            price_id=price_id,
            metadata={'user_id': str(user_id)},
        )

        if not result.success:
            raise RequestFailed(result.error or 'Failed to create subscription')

        profile.stripe_subscription_id = result.subscription_id
        profile.subscription_status = result.status
        db.commit()

        print(f"[Billing] Subscription {result.subscription_id} created for user {user_id} ({result.status})")

        return {
            'clientSecret': result.client_secret,
            'subscriptionId': result.subscription_id,
        }

    def _apply_subscription_status(self, profile: UserProfile, subscription_id: Optional[str],
                                   status: Optional[str], period_end=None):
        """
        Sync plan with the subscription status.

        Pro while active/trialing. The transition into Pro grants the
        monthly allowance; later updates of an already-Pro profile do not.
        The plan flip is a conditional UPDATE, so a webhook and a manual
        sync racing each other grant the allowance once. Profile changes
        commit together with the grant.
        """
        db = get_db()

        is_active = status in ACTIVE_SUBSCRIPTION_STATUSES
        plan = Plan.PRO if is_active else Plan.FREE

        changed = db.execute(
            update(UserProfile)
            .where(UserProfile.user_id == profile.user_id, UserProfile.plan != plan)
            .values(plan=plan)
            .execution_options(synchronize_session='fetch')
        ).rowcount == 1

        if subscription_id:
            profile.stripe_subscription_id = subscription_id
        profile.subscription_status = status

        if is_active and changed:
            profile.next_refill_date = period_end or (utcnow() + timedelta(days=SUBSCRIPTION_PERIOD_DAYS))
            add_credits(profile.user_id, MONTHLY_CREDITS, TransactionType.SUBSCRIPTION, 'Monthly plan credits',
                        reference=subscription_id)
        else:
            if not is_active:
                profile.next_refill_date = None
            elif period_end:
                profile.next_refill_date = period_end
            db.commit()

        print(f"[Billing] Subscription status for user {profile.user_id}: {status} (plan={profile.plan})")
        audit.log_event(
            AuditEvent.SUBSCRIPTION_CHANGED,
            user_id=profile.user_id,
            details={'status': status, 'plan': profile.plan},
        )

    def sync_subscription(self, user_id: int) -> Dict[str, Any]:
        """
        Pull the stored subscription from the provider and apply its status.

        Used when the client returns from checkout before the webhook has
        landed. Only a free -> pro transition grants credits here; renewals
        are left to invoice.paid.

        Returns:
            {'subscription': None} or
            {'subscription': {'id', 'status', 'currentPeriodEnd', 'plan'}}
        """
        profile = ensure_profile(user_id)
        if not profile.stripe_subscription_id:
            return {'subscription': None}

        self._require_configured()

        sub = self.provider.retrieve_subscription(profile.stripe_subscription_id)
        if sub is None:
            return {'subscription': None}

        self._apply_subscription_status(profile, sub.subscription_id, sub.status, sub.current_period_end)

        return {
            'subscription': {
                'id': sub.subscription_id,
                'status': sub.status,
                'currentPeriodEnd': sub.current_period_end.isoformat() if sub.current_period_end else None,
                'plan': profile.plan,
            }
        }

    # =========================================================================
    # HOSTED CHECKOUT & PORTAL
    # =========================================================================

    def get_products(self):
        """Active products with their prices, as listed by the provider."""
        self._require_configured()
        return self.provider.list_products()

    def create_subscription_checkout(self, user_id: int, price_id: Optional[str], base_url: str) -> Dict[str, Any]:
        """
        Hosted Checkout for the Pro plan.

        The plan is applied by checkout.session.completed and the
        customer.subscription.* webhooks, or by sync_subscription.
        """
        self._require_configured()

        price_id = price_id or STRIPE_PRO_PRICE_ID
        if not price_id:
            raise ValidationError('Price ID required')

        profile = self._ensure_customer(user_id)

        result = self.provider.create_checkout_session(
            customer_id=profile.stripe_customer_id,
            mode='subscription',
            price_id=price_id,
            quantity=1,
            success_url=f'{base_url}/billing?success=subscription',
            cancel_url=f'{base_url}/billing?canceled=true',
            metadata={'user_id': str(user_id)},
        )

        if not result.success:
            raise RequestFailed(result.error or 'Failed to create checkout session')

        return {'url': result.checkout_url}

    def create_credit_checkout(self, user_id: int, price_id: Optional[str], quantity: Any, base_url: str) -> Dict[str, Any]:
        """
        Hosted Checkout for a credit purchase.

        The session and its payment intent carry the credit_purchase
        metadata, so the webhooks fulfil it like an embedded purchase.
        """
        self._require_configured()

        if not price_id:
            raise ValidationError('Price ID required')

        quantity = self._parse_quantity(quantity)
        profile = self._ensure_customer(user_id)

        result = self.provider.create_checkout_session(
            customer_id=profile.stripe_customer_id,
            mode='payment',
            price_id=price_id,
            quantity=quantity,
            success_url=f'{base_url}/billing?success=credits&quantity={quantity}',
            cancel_url=f'{base_url}/billing?canceled=true',
            metadata={
                'type': CREDIT_PURCHASE,
                'credits': str(quantity),
                'user_id': str(user_id),
            },
        )

        if not result.success:
            raise RequestFailed(result.error or 'Failed to create checkout session')

        print(f"[Billing] Credit checkout {result.provider_session_id} for user {user_id}: {quantity} credit(s)")
        return {'url': result.checkout_url}

    def create_portal_session(self, user_id: int, base_url: str) -> Dict[str, Any]:
        """
        Billing portal link for managing payment methods and the plan.

        Raises:
            ValidationError: user never became a provider customer
        """
        self._require_configured()

        profile = ensure_profile(user_id)
        if not profile.stripe_customer_id:
            raise ValidationError('No Stripe customer found')

        result = self.provider.create_portal_session(profile.stripe_customer_id, f'{base_url}/billing')
        if not result.success:
            raise RequestFailed(result.error or 'Failed to create portal session')

        return {'url': result.checkout_url}

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Handle incoming webhook from payment provider.

        Flow:
            1. Verify signature
            2. Skip events already processed
            3. Route to the handler; the PaymentEvent row (marked processed)
               commits together with the handler's writes

        A handler failure rolls everything back and stores the error on an
        unprocessed PaymentEvent, so the provider's redelivery runs the
        handler again instead of being treated as a duplicate.

        Raises:
            ValidationError: signature verification failed

        Returns:
            {'received': True, 'event_id': str, 'duplicate': bool}
        """
        is_valid, event_data = self.provider.verify_webhook(payload, signature)

        if not is_valid:
            print("[Billing] Webhook signature verification failed")
            raise ValidationError('Invalid signature')

        event_id = event_data.get('id')
        event_type = self.provider.get_event_type(event_data)

        print(f"[Billing] Webhook received: {event_type} ({event_id})")

        db = get_db()
        duplicate = {'received': True, 'event_id': event_id, 'duplicate': True}

        payment_event = self._find_event(event_id)
        if payment_event is not None and payment_event.processed:
            print(f"[Billing] Duplicate webhook ignored: {event_id}")
            return duplicate

        if payment_event is None:
            payment_event = PaymentEvent(
                provider=self.provider.name,
                provider_event_id=event_id,
                event_type=event_type,
                payload_json=event_data,
            )
            db.add(payment_event)
        else:
            print(f"[Billing] Reprocessing failed webhook: {event_id}")

        payment_event.processed = True
        payment_event.processed_at = utcnow()
        payment_event.error_message = None

        try:
            # Unique constraint catches a concurrent delivery of the same event
            db.flush()
        except IntegrityError:
            db.rollback()
            print(f"[Billing] Duplicate webhook ignored: {event_id}")
            return duplicate

        try:
            if event_type == 'payment_intent.succeeded':
                self._handle_payment_intent_succeeded(event_data)

            elif event_type == 'checkout.session.completed':
                self._handle_checkout_completed(event_data)

            elif event_type in ('customer.subscription.created',
                                'customer.subscription.updated',
                                'customer.subscription.deleted'):
                self._handle_subscription_event(event_data)

            elif event_type == 'invoice.paid':
                self._handle_invoice_paid(event_data)

            else:
                print(f"[Billing] Unhandled event type: {event_type}")

            db.commit()

        except Exception as e:
            db.rollback()
            print(f"[Billing] Webhook handler error: {e}")
            self._record_failure(event_id, event_type, event_data, e)
            raise

        audit.log_event(
            AuditEvent.PAYMENT_WEBHOOK,
            details={'event_type': event_type, 'event_id': event_id},
        )

        return {'received': True, 'event_id': event_id, 'duplicate': False}

    def _find_event(self, event_id: str) -> Optional[PaymentEvent]:
        return get_db().query(PaymentEvent).filter_by(
            provider=self.provider.name,
            provider_event_id=event_id,
        ).first()

    def _record_failure(self, event_id: str, event_type: str, event_data: dict, error: Exception):
        """Leave an unprocessed PaymentEvent carrying the error for redelivery."""
        db = get_db()

        payment_event = self._find_event(event_id)
        if payment_event is None:
            payment_event = PaymentEvent(
                provider=self.provider.name,
                provider_event_id=event_id,
                event_type=event_type,
                payload_json=event_data,
                processed=False,
            )
            db.add(payment_event)
        payment_event.error_message = str(error)[:1000]

        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            print(f"[Billing] Failure for {event_id} already recorded by another delivery")

    def _handle_payment_intent_succeeded(self, event_data: dict):
        intent = self.provider.parse_payment_intent(event_data)

        if intent.metadata.get('type') != CREDIT_PURCHASE:
            # Subscription invoices also produce payment intents
            print(f"[Billing] Ignoring payment intent {intent.payment_intent_id} (not a credit purchase)")
            return

        self._fulfil_credit_purchase(intent)

    def _handle_checkout_completed(self, event_data: dict):
        session = self.provider.get_event_object(event_data)
        metadata = session.get('metadata') or {}

        if session.get('mode') == 'payment' and metadata.get('type') == CREDIT_PURCHASE:
            profile = self._profile_for_customer(session.get('customer'))
            if metadata.get('user_id') is None and profile is not None:
                metadata = {**metadata, 'user_id': str(profile.user_id)}

            intent = PaymentIntentResult(
                success=True,
                payment_intent_id=session.get('payment_intent') or session.get('id'),
                status='succeeded',
                customer_id=session.get('customer'),
                metadata=metadata,
            )
            self._fulfil_credit_purchase(intent)
            return

        if session.get('mode') == 'subscription' and session.get('subscription'):
            sub = self.provider.parse_subscription(event_data)
            profile = self._profile_for_customer(sub.customer_id)
            if profile is None:
                print(f"[Billing] No user found for customer {sub.customer_id}")
                return
            self._apply_subscription_status(profile, sub.subscription_id, sub.status)

    def _handle_subscription_event(self, event_data: dict):
        sub = self.provider.parse_subscription(event_data)

        profile = self._profile_for_customer(sub.customer_id)
        if profile is None:
            print(f"[Billing] No user found for customer {sub.customer_id}")
            return

        status = sub.status
        if self.provider.get_event_type(event_data) == 'customer.subscription.deleted':
            status = status or 'canceled'

        self._apply_subscription_status(profile, sub.subscription_id, status, sub.current_period_end)

    def _handle_invoice_paid(self, event_data: dict):
        """Renewal invoices refill the monthly allowance."""
        invoice = self.provider.parse_invoice(event_data)

        if not invoice.subscription_id or invoice.billing_reason != 'subscription_cycle':
            return

        profile = self._profile_for_customer(invoice.customer_id)
        if profile is None:
            print(f"[Billing] No user found for customer {invoice.customer_id}")
            return

        # add_credits commits the refill date with the grant
        profile.next_refill_date = utcnow() + timedelta(days=SUBSCRIPTION_PERIOD_DAYS)
        add_credits(profile.user_id, MONTHLY_CREDITS, TransactionType.SUBSCRIPTION, 'Monthly plan credits',
                    reference=invoice.subscription_id)
        print(f"[Billing] Monthly credits refilled for user {profile.user_id}")


# Singleton instance
billing_service = BillingService()
