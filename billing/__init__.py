"""
billing - accounts, credit ledger and Stripe billing for SmartSeek.

Modules:
    db          Engine, scoped sessions, init_db
    models      User, UserProfile, CreditTransaction, PaymentEvent, AppSetting
    ledger      Balance changes (spend / add_credits / adjust)
    service     BillingService (payment intents, subscriptions, webhooks)
    auth        Flask-Login, signup, verification, password reset
    decorators  requires_auth / requires_verified_email / requires_admin
    routes      billing_bp blueprint
"""
