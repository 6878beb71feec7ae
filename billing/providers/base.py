"""
billing/providers/base.py

Abstract base class for payment providers.

BillingService talks to this interface only; the Stripe implementation is
the single module that imports the provider SDK.

Methods to implement:
    - ensure_customer(email, user_id, customer_id) -> customer id
    - create_payment_intent(customer_id, amount_cents, currency, metadata)
    - retrieve_payment_intent(payment_intent_id)
    - create_subscription(customer_id, price_id, metadata)
    - create_checkout_session(...) / create_portal_session(...) -> hosted page URL
    - retrieve_subscription(subscription_id)
    - list_products() -> catalogue with prices
    - verify_webhook(payload, signature) -> (is_valid, event)
    - parse_* helpers turning raw events into the dataclasses below

Version History:
    2026-01-12: Reworked around payment intents and subscriptions
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple, Dict, List


@dataclass
class PaymentIntentResult:
    """A payment intent as the provider reports it."""
    success: bool
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    status: Optional[str] = None
    amount_cents: Optional[int] = None
    customer_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class SubscriptionResult:
    """Result of creating an incomplete (embedded) subscription."""
    success: bool
    subscription_id: Optional[str] = None
    client_secret: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CheckoutResult:
    """A hosted Checkout or billing-portal session."""
    success: bool
    checkout_url: Optional[str] = None
    provider_session_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SubscriptionEvent:
    """Parsed subscription / subscription-checkout webhook payload."""
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: Optional[str]
    current_period_end: Optional[datetime] = None


@dataclass
class InvoiceEvent:
    """Parsed invoice.paid payload."""
    customer_id: Optional[str]
    subscription_id: Optional[str]
    billing_reason: Optional[str]
    period_end: Optional[datetime] = None


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'stripe')."""
        pass

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when API keys are present."""
        pass

    @property
    @abstractmethod
    def publishable_key(self) -> str:
        pass

    @abstractmethod
    def ensure_customer(self, email: str, user_id: int, customer_id: Optional[str] = None) -> str:
        """
        Return customer_id if given, otherwise create a customer.

        Raises:
            RequestFailed: provider call failed
        """
        pass

    @abstractmethod
    def create_payment_intent(
        self,
        customer_id: str,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str]
    ) -> PaymentIntentResult:
        pass

    @abstractmethod
    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        pass

    @abstractmethod
    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str]
    ) -> SubscriptionResult:
        pass

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> Optional[SubscriptionEvent]:
        """Current state of a subscription, or None if the provider does not know it."""
        pass

    @abstractmethod
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
        """
        Create a hosted Checkout session.

        Args:
            mode: 'payment' (credit purchase) or 'subscription'
            metadata: copied onto the session and, in payment mode, onto
                its payment intent
        """
        pass

    @abstractmethod
    def create_portal_session(self, customer_id: str, return_url: str) -> CheckoutResult:
        """Self-service billing portal for an existing customer."""
        pass

    @abstractmethod
    def list_products(self) -> List[dict]:
        """Active products, each with its active prices."""
        pass

    @abstractmethod
    def verify_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Tuple[bool, Optional[dict]]:
        """
        Verify webhook signature and parse payload.

        Returns:
            (is_valid, parsed_event_dict)
        """
        pass

    # Event parsing (override if provider uses different structure)

    def get_event_type(self, event_data: dict) -> Optional[str]:
        return event_data.get('type')

    def get_event_object(self, event_data: dict) -> dict:
        return (event_data.get('data') or {}).get('object') or {}

    @abstractmethod
    def parse_payment_intent(self, event_data: dict) -> PaymentIntentResult:
        pass

    @abstractmethod
    def parse_subscription(self, event_data: dict) -> SubscriptionEvent:
        pass

    @abstractmethod
    def parse_invoice(self, event_data: dict) -> InvoiceEvent:
        pass
