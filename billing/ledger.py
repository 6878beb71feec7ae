"""
billing/ledger.py

Credit ledger operations for SmartSeek.

UserProfile.credits is the authoritative balance; every change to it is
paired with a CreditTransaction row in the same database transaction:
    - SUM(amount) for a user == UserProfile.credits
    - Every change is recorded (audit trail)
    - The balance never goes below zero

Operations:
    - ensure_profile(user_id) -> UserProfile
    - get_balance(user_id) -> int
    - spend(user_id, amount, description) -> CreditTransaction
    - log_spend(entry) after committing a deferred spend
    - add_credits(user_id, amount, type, description, ...) -> CreditTransaction
    - adjust(user_id, delta, description, admin_id) -> CreditTransaction
    - get_transactions(user_id, limit) -> list
    - reconcile(user_id) -> (cached, ledger_sum)

Design principles:
    1. Never assign UserProfile.credits directly - always go through here
    2. Spends are a conditional UPDATE (credits >= n), so two concurrent
       spends can never both succeed on a balance that covers only one
    3. Every entry records balance_after for fast reads

Version History:
    2026-01-12: Adapted for SmartSeek (cached balance + signed transactions)
"""

from typing import Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from audit_log import audit, AuditEvent
from billing.config import (
    FREE_TRIAL_CREDITS, FREE_TRIAL_DESCRIPTION,
    DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT,
)
from billing.db import get_db
from billing.models import UserProfile, CreditTransaction, TransactionType
from errors import InsufficientCredits, NotFound, ValidationError


ADJUST_MAX_ATTEMPTS = 3


# =============================================================================
# PROFILES
# =============================================================================

def get_profile(user_id: int) -> Optional[UserProfile]:
    return get_db().get(UserProfile, user_id)


def ensure_profile(user_id: int) -> UserProfile:
    """
    Return the user's profile, creating it on first access.

    A new profile starts at zero and immediately receives the free trial
    as an `earn` transaction, so the ledger sum matches from the start.
    """
    db = get_db()

    profile = db.get(UserProfile, user_id)
    if profile is not None:
        return profile

    try:
        profile = UserProfile(user_id=user_id, credits=0)
        db.add(profile)
        db.flush()
    except IntegrityError:
        # Another request created it first
        db.rollback()
        profile = db.get(UserProfile, user_id)
        if profile is None:
            raise
        return profile

    print(f"[Ledger] Created profile for user {user_id}")
    add_credits(user_id, FREE_TRIAL_CREDITS, TransactionType.EARN, FREE_TRIAL_DESCRIPTION)
    db.refresh(profile)
    return profile


# =============================================================================
# BALANCE QUERIES
# =============================================================================

def get_balance(user_id: int) -> int:
    """
    Get current credit balance for a user.

    Raises:
        NotFound: user has no profile
    """
    db = get_db()

    balance = db.query(UserProfile.credits).filter(
        UserProfile.user_id == user_id
    ).scalar()

    if balance is None:
        raise NotFound('Profile not found')
    return balance


def get_ledger_sum(user_id: int) -> int:
    db = get_db()

    result = db.query(func.sum(CreditTransaction.amount)).filter(
        CreditTransaction.user_id == user_id
    ).scalar()

    return result or 0


def reconcile(user_id: int) -> Tuple[int, int]:
    """
    Compare the cached balance with the transaction log.

    Returns:
        (cached balance, sum of transaction amounts); equal unless the
        ledger has been bypassed
    """
    cached = get_balance(user_id)
    ledger_sum = get_ledger_sum(user_id)

    if cached != ledger_sum:
        print(f"[Ledger] MISMATCH for user {user_id}: cached={cached} ledger={ledger_sum}")

    return cached, ledger_sum


# =============================================================================
# CREDIT OPERATIONS
# =============================================================================

def _record(db, user_id: int, amount: int, type_: str, description: str,
            reference: Optional[str] = None) -> CreditTransaction:
    """Append a transaction row carrying the post-change balance."""
    balance_after = db.query(UserProfile.credits).filter(
        UserProfile.user_id == user_id
    ).scalar()

    entry = CreditTransaction(
        user_id=user_id,
        amount=amount,
        type=type_,
        description=description,
        balance_after=balance_after,
        reference=reference,
    )
    db.add(entry)
    return entry


def spend(user_id: int, amount: int, description: str, commit: bool = True) -> CreditTransaction:
    """
    Spend credits for a paid action.

    Args:
        user_id: User spending credits
        amount: Credits to spend (positive)
        description: Shown in the transaction history
        commit: False leaves the transaction open so the caller can insert
            the purchased row atomically with the spend. The caller then
            commits and calls log_spend(entry) itself.

    Returns:
        The `spend` transaction (negative amount)

    Raises:
        ValidationError: amount is not positive
        NotFound: user has no profile
        InsufficientCredits: balance < amount (nothing is changed)
    """
    if amount <= 0:
        raise ValidationError(f'Invalid spend amount: {amount}')

    db = get_db()

    try:
        result = db.execute(
            update(UserProfile)
            .where(UserProfile.user_id == user_id, UserProfile.credits >= amount)
            .values(credits=UserProfile.credits - amount)
            .execution_options(synchronize_session='fetch')
        )

        if result.rowcount != 1:
            db.rollback()
            available = db.query(UserProfile.credits).filter(
                UserProfile.user_id == user_id
            ).scalar()
            if available is None:
                raise NotFound('Profile not found')

            print(f"[Ledger] Insufficient balance for user {user_id}: {available} < {amount}")
            audit.log_event(
                AuditEvent.CREDITS_INSUFFICIENT,
                user_id=user_id,
                details={'required': amount, 'available': available, 'description': description},
            )
            raise InsufficientCredits(amount, available)

        entry = _record(db, user_id, -amount, TransactionType.SPEND, description)

        if commit:
            db.commit()

    except (InsufficientCredits, NotFound):
        raise
    except Exception as e:
        db.rollback()
        print(f"[Ledger] Failed to spend credits: {e}")
        raise

    if commit:
        log_spend(entry)
    return entry


def log_spend(entry: CreditTransaction) -> None:
    """Log and audit a committed spend."""
    amount = -entry.amount
    print(f"[Ledger] Spent {amount} credit(s) for user {entry.user_id} ({entry.description}). Balance: {entry.balance_after}")
    audit.log_event(
        AuditEvent.CREDITS_SPENT,
        user_id=entry.user_id,
        details={'amount': amount, 'balance_after': entry.balance_after, 'description': entry.description},
    )


def add_credits(
    user_id: int,
    amount: int,
    type: str,
    description: str,
    reference: Optional[str] = None,
) -> CreditTransaction:
    """
    Grant credits (free trial, purchase, subscription allowance).

    Never fails on balance checks.

    Raises:
        ValidationError: amount not positive, or type is not an addition
        NotFound: user has no profile
    """
    if amount <= 0:
        raise ValidationError(f'Invalid grant amount: {amount}')
    if type not in TransactionType.ADDITIONS:
        raise ValidationError(f'Invalid grant type: {type}')

    db = get_db()

    try:
        result = db.execute(
            update(UserProfile)
            .where(UserProfile.user_id == user_id)
            .values(credits=UserProfile.credits + amount)
            .execution_options(synchronize_session='fetch')
        )
        if result.rowcount != 1:
            db.rollback()
            raise NotFound('Profile not found')

        entry = _record(db, user_id, amount, type, description, reference)
        db.commit()

    except NotFound:
        raise
    except Exception as e:
        db.rollback()
        print(f"[Ledger] Failed to grant credits: {e}")
        raise

    print(f"[Ledger] Granted {amount} credits to user {user_id} ({type}). Balance: {entry.balance_after}")
    audit.log_event(
        AuditEvent.CREDITS_ADDED,
        user_id=user_id,
        details={'amount': amount, 'type': type, 'balance_after': entry.balance_after, 'description': description},
    )
    return entry


# =============================================================================
# ADMIN OPERATIONS
# =============================================================================

def adjust(user_id: int, delta: int, description: str, admin_id: int) -> Optional[CreditTransaction]:
    """
    Admin correction of either sign.

    A negative delta larger than the balance is clamped so the balance
    lands on zero. The update is compare-and-swap on the balance read, so a
    concurrent spend makes us re-read instead of overshooting.

    Returns:
        The `adjustment` transaction, or None when nothing could be removed
    """
    if delta == 0:
        raise ValidationError('Adjustment must be non-zero')
    if not description:
        raise ValidationError('Description is required')

    db = get_db()

    for _ in range(ADJUST_MAX_ATTEMPTS):
        current = get_balance(user_id)
        applied = max(delta, -current)

        if applied == 0:
            print(f"[Ledger] No credits to remove for user {user_id}")
            return None

        try:
            result = db.execute(
                update(UserProfile)
                .where(UserProfile.user_id == user_id, UserProfile.credits == current)
                .values(credits=current + applied)
                .execution_options(synchronize_session='fetch')
            )
            if result.rowcount != 1:
                db.rollback()
                continue

            entry = _record(db, user_id, applied, TransactionType.ADJUSTMENT, description,
                            reference=f'admin:{admin_id}')
            db.commit()

        except Exception as e:
            db.rollback()
            print(f"[Ledger] Failed to adjust credits: {e}")
            raise

        print(f"[Ledger] Admin {admin_id} adjusted user {user_id} by {applied}. Balance: {entry.balance_after}")
        audit.log_event(
            AuditEvent.CREDITS_ADJUSTED,
            user_id=user_id,
            details={'amount': applied, 'admin_id': admin_id, 'balance_after': entry.balance_after,
                     'description': description},
        )
        return entry

    raise RuntimeError(f'Balance for user {user_id} changed during adjustment; try again')


# =============================================================================
# LEDGER QUERIES
# =============================================================================

def get_transactions(user_id: int, limit: int = DEFAULT_HISTORY_LIMIT) -> list:
    """
    Credit history for a user, newest first.

    Args:
        user_id: User's ID
        limit: Max entries (capped at MAX_HISTORY_LIMIT)
    """
    limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))

    db = get_db()

    return db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id
    ).order_by(
        CreditTransaction.created_at.desc(),
        CreditTransaction.id.desc()
    ).limit(limit).all()
