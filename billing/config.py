"""
billing/config.py

Billing configuration and credit business rules.

Design principles:
    1. Prices in cents (avoid floating point)
    2. Credit costs defined HERE, not in route handlers
    3. Stripe price ids for plans come from the environment

Credit economy:
    - free trial:        2 credits on first profile access
    - credit purchase:   $10.00 per credit, 1..100 per payment
    - pro subscription:  10 credits per billing period
    - Smart Finder report:       1 credit
    - premium sourcing request: 10 credits

Version History:
    2026-01-12: Adapted for SmartSeek
"""

import os


# =============================================================================
# STRIPE CONFIGURATION
# =============================================================================

STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
STRIPE_PUBLISHABLE_KEY = os.environ.get('STRIPE_PUBLISHABLE_KEY', '')
STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET', '')

# Price id of the monthly Pro plan (optional default for embedded subscriptions)
STRIPE_PRO_PRICE_ID = os.environ.get('STRIPE_PRO_PRICE_ID', '')

# Stripe mode detection
STRIPE_TEST_MODE = STRIPE_SECRET_KEY.startswith('sk_test_')

if not STRIPE_SECRET_KEY:
    print("[Billing] WARNING: STRIPE_SECRET_KEY not set")
elif STRIPE_TEST_MODE:
    print("[Billing] Stripe running in TEST mode")
else:
    print("[Billing] Stripe running in LIVE mode")


# =============================================================================
# BUSINESS RULES
# =============================================================================

# Granted once when a profile is created
FREE_TRIAL_CREDITS = 2
FREE_TRIAL_DESCRIPTION = 'Free trial credits'

# Costs of paid actions
REPORT_COST = 1
REPORT_DESCRIPTION = 'Smart Finder Report'
SOURCING_REQUEST_COST = 10
SOURCING_REQUEST_DESCRIPTION = 'Premium Sourcing Request'

# Credit purchases
CREDIT_PRICE_CENTS = 1000
CREDIT_CURRENCY = 'usd'
MIN_CREDITS_PER_PURCHASE = 1
MAX_CREDITS_PER_PURCHASE = 100

# Pro plan allowance per billing period
MONTHLY_CREDITS = 10
SUBSCRIPTION_PERIOD_DAYS = 30

# Subscription statuses that keep the Pro plan
ACTIVE_SUBSCRIPTION_STATUSES = ('active', 'trialing')

# Transaction history page size
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 200
