"""
billing/providers/__init__.py

Payment provider exports.
"""

from billing.providers.base import (
    PaymentProvider, PaymentIntentResult, SubscriptionResult,
    SubscriptionEvent, InvoiceEvent, CheckoutResult,
)
from billing.providers.stripe_provider import StripeProvider, get_stripe_provider

__all__ = [
    'PaymentProvider',
    'PaymentIntentResult',
    'SubscriptionResult',
    'SubscriptionEvent',
    'InvoiceEvent',
    'CheckoutResult',
    'StripeProvider',
    'get_stripe_provider',
]
