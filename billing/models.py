"""
billing/models.py

SQLAlchemy models for accounts, profiles and the credit ledger.

Tables:
    - users: User accounts with email/password auth
    - user_profiles: Role, plan, cached credit balance, Stripe ids
    - credit_transactions: Append-only credit log (+earn/topup/subscription, -spend)
    - payment_events: Processed payment events for idempotency
    - app_settings: Admin-managed key/value configuration

Design principles:
    1. Ledger invariant: SUM(credit_transactions.amount) == user_profiles.credits
    2. Idempotency: Unique constraints prevent double-processing
    3. Balance never negative: check constraint + conditional update in ledger

Other model modules (integrations.models, sourcing.models) share Base.

Version History:
    2026-01-12: Adapted for SmartSeek (profiles, signed transactions, settings)
"""

from datetime import timedelta

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, JSON,
    ForeignKey, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

import bcrypt

from billing.db import utcnow


Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), 'postgresql')


# =============================================================================
# USER MODEL
# =============================================================================

class User(Base):
    """User account with email/password authentication."""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)

    # Authentication
    email = Column(String(500), unique=True, nullable=False, index=True)
    password_hash = Column(String(200))

    # Profile
    first_name = Column(String(200))
    last_name = Column(String(200))

    # Status
    is_active = Column(Boolean, default=True)
    email_verified = Column(Boolean, default=False)

    # Email verification / password reset
    verification_token = Column(String(100), index=True)
    verification_token_expires = Column(DateTime)
    password_reset_token = Column(String(100), index=True)
    password_reset_expires = Column(DateTime)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    last_login_at = Column(DateTime)

    # Relationships
    profile = relationship('UserProfile', back_populates='user', uselist=False)

    # Password hashing
    def set_password(self, password: str):
        """Hash and store password."""
        salt = bcrypt.gensalt()
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

    def check_password(self, password: str) -> bool:
        """Verify password against hash."""
        if not self.password_hash:
            return False
        return bcrypt.checkpw(
            password.encode('utf-8'),
            self.password_hash.encode('utf-8')
        )

    # Flask-Login integration
    @property
    def is_authenticated(self):
        return True

    @property
    def is_anonymous(self):
        return False

    def get_id(self):
        return str(self.id)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'email': self.email,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'emailVerified': bool(self.email_verified),
        }

    def __repr__(self):
        return f'<User {self.email}>'


# =============================================================================
# USER PROFILE MODEL
# =============================================================================

class Role:
    BUYER = 'buyer'
    SELLER = 'seller'
    ADMIN = 'admin'

    ALL = (BUYER, SELLER, ADMIN)


class Plan:
    FREE = 'free'
    PRO = 'pro'

    ALL = (FREE, PRO)


class UserProfile(Base):
    """
    Per-user application profile.

    `credits` is a cached balance; it only changes through billing.ledger,
    which appends the matching CreditTransaction in the same transaction.
    """
    __tablename__ = 'user_profiles'

    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), primary_key=True)

    role = Column(String(20), default=Role.BUYER, nullable=False)
    plan = Column(String(20), default=Plan.FREE, nullable=False)
    credits = Column(Integer, default=0, nullable=False)
    region = Column(Text, default='North America')
    currency = Column(String(3), default='USD')
    next_refill_date = Column(DateTime)

    # Stripe
    stripe_customer_id = Column(String(200), index=True)
    stripe_subscription_id = Column(String(200))
    subscription_status = Column(String(50))

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship('User', back_populates='profile')

    __table_args__ = (
        CheckConstraint('credits >= 0', name='ck_user_profiles_credits_non_negative'),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_pro(self) -> bool:
        return self.plan == Plan.PRO

    def to_dict(self) -> dict:
        return {
            'userId': self.user_id,
            'role': self.role,
            'plan': self.plan,
            'credits': self.credits,
            'region': self.region,
            'currency': self.currency,
            'nextRefillDate': self.next_refill_date.isoformat() if self.next_refill_date else None,
            'subscriptionStatus': self.subscription_status,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<UserProfile user={self.user_id} {self.plan} credits={self.credits}>'


# =============================================================================
# CREDIT TRANSACTION MODEL
# =============================================================================

class TransactionType:
    """Credit transaction type constants."""
    EARN = 'earn'                  # Free trial, promos
    SPEND = 'spend'                # Paid action (negative amount)
    TOPUP = 'topup'                # Credit purchase
    SUBSCRIPTION = 'subscription'  # Monthly plan allowance
    ADJUSTMENT = 'adjustment'      # Admin correction (either sign)

    ALL = (EARN, SPEND, TOPUP, SUBSCRIPTION, ADJUSTMENT)
    ADDITIONS = (EARN, TOPUP, SUBSCRIPTION)


class CreditTransaction(Base):
    """
    Credit transaction log.

    Rows are never updated or deleted. Every balance change is recorded:
        +2  earn          Free trial credits
        +5  topup         Purchased 5 credit(s)
        -1  spend         Smart Finder Report
        +10 subscription  Monthly plan credits
    """
    __tablename__ = 'credit_transactions'

    id = Column(Integer, primary_key=True)

    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)

    amount = Column(Integer, nullable=False)  # Positive = grant, negative = spend
    type = Column(String(20), nullable=False)
    description = Column(Text, nullable=False)

    # Balance after this transaction (denormalized for display)
    balance_after = Column(Integer)

    # External reference (payment intent id, admin id, ...)
    reference = Column(String(200))

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'userId': self.user_id,
            'amount': self.amount,
            'type': self.type,
            'description': self.description,
            'balanceAfter': self.balance_after,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        sign = '+' if self.amount > 0 else ''
        return f'<CreditTransaction user={self.user_id} {sign}{self.amount} ({self.type})>'


# Index for history queries
Index('idx_credit_transactions_user_created', CreditTransaction.user_id, CreditTransaction.created_at)


# =============================================================================
# PAYMENT EVENTS MODEL (Idempotency)
# =============================================================================

class PaymentEvent(Base):
    """
    Processed payment events.

    Webhook events are keyed by the provider event id; credit purchases are
    also keyed by their payment intent id so that a webhook and an explicit
    confirm-payment call for the same intent top up only once.
    """
    __tablename__ = 'payment_events'

    id = Column(Integer, primary_key=True)

    provider = Column(String(50), nullable=False)
    provider_event_id = Column(String(200), nullable=False)

    event_type = Column(String(100))
    payload_json = Column(JSONType)

    processed = Column(Boolean, default=False)
    error_message = Column(Text)

    received_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint('provider', 'provider_event_id', name='uq_payment_events_provider_event'),
    )

    def __repr__(self):
        return f'<PaymentEvent {self.provider}:{self.provider_event_id}>'


# =============================================================================
# APP SETTINGS MODEL
# =============================================================================

class AppSetting(Base):
    """Admin-managed key/value settings."""
    __tablename__ = 'app_settings'

    id = Column(Integer, primary_key=True)
    key = Column(Text, unique=True, nullable=False)
    value = Column(JSONType, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            'key': self.key,
            'value': self.value,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<AppSetting {self.key}>'


def token_expiry(hours: int):
    """Expiry timestamp `hours` from now (verification/reset tokens)."""
    return utcnow() + timedelta(hours=hours)
