"""
billing/auth.py

Accounts: signup, password login through Flask-Login, single-use email
verification links and password reset links.

Unauthenticated API calls get a JSON 401 rather than a redirect. Profiles
and the free trial are not created here; billing.ledger.ensure_profile does
that on first profile access.
"""

import re
import secrets
from typing import Optional, Tuple

from flask import jsonify
from flask_login import LoginManager

from audit_log import audit, AuditEvent
from billing.db import get_db, utcnow
from billing.models import User, token_expiry
from config import VERIFICATION_TOKEN_HOURS, PASSWORD_RESET_TOKEN_HOURS


MIN_PASSWORD_LENGTH = 6
MAX_EMAIL_LENGTH = 500
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


# =============================================================================
# FLASK-LOGIN SETUP
# =============================================================================

login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id: str) -> Optional[User]:
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        return None
    return get_db().get(User, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Not authenticated', 'code': 'AUTH_REQUIRED'}), 401


def init_auth(app):
    login_manager.init_app(app)
    print("[Auth] Authentication initialized")


# =============================================================================
# VALIDATION
# =============================================================================

def validate_email(email: str) -> Tuple[bool, Optional[str]]:
    """(ok, message) for an address; compared case-insensitively."""
    if not email:
        return False, "Email is required"
    email = email.strip().lower()
    if len(email) > MAX_EMAIL_LENGTH:
        return False, "Email too long"
    if not EMAIL_PATTERN.match(email):
        return False, "Invalid email format"
    return True, None


def validate_password(password: str) -> Tuple[bool, Optional[str]]:
    if not password:
        return False, "Password is required"

    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"

    if len(password) > 200:
        return False, "Password too long"

    return True, None


def _new_token() -> str:
    return secrets.token_urlsafe(32)


# =============================================================================
# USER REGISTRATION
# =============================================================================

def register_user(
    email: str,
    password: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None
) -> Tuple[Optional[User], Optional[str]]:
    """
    Create an unverified account carrying a fresh verification token.

    Returns (user, None), or (None, message) when input is invalid or the
    email is already registered.
    """
    valid, error = validate_email(email)
    if not valid:
        return None, error

    email = email.strip().lower()

    valid, error = validate_password(password)
    if not valid:
        return None, error

    db = get_db()

    try:
        existing = db.query(User).filter_by(email=email).first()
        if existing:
            return None, "An account with this email already exists"

        user = User(
            email=email,
            first_name=first_name.strip() if first_name else None,
            last_name=last_name.strip() if last_name else None,
            email_verified=False,
            verification_token=_new_token(),
            verification_token_expires=token_expiry(VERIFICATION_TOKEN_HOURS),
        )
        user.set_password(password)

        db.add(user)
        db.commit()

    except Exception as e:
        db.rollback()
        print(f"[Auth] Registration failed for {email}: {e}")
        return None, "Failed to create account"

    print(f"[Auth] New user registered: {email}")
    audit.log_request_event(AuditEvent.AUTH_SIGNUP, user_id=user.id)
    return user, None


# =============================================================================
# USER AUTHENTICATION
# =============================================================================

def authenticate_user(email: str, password: str) -> Optional[User]:
    """The active user matching the credentials, else None (audited)."""
    if not email or not password:
        return None

    email = email.strip().lower()

    db = get_db()

    user = db.query(User).filter_by(email=email).first()

    if not user or not user.is_active or not user.check_password(password):
        audit.log_request_event(
            AuditEvent.AUTH_LOGIN_FAILED,
            user_id=user.id if user else None,
        )
        return None

    user.last_login_at = utcnow()
    db.commit()

    return user


# =============================================================================
# EMAIL VERIFICATION
# =============================================================================

def issue_verification_token(user: User) -> str:
    """Replace the user's verification token with a fresh one."""
    db = get_db()

    user.verification_token = _new_token()
    user.verification_token_expires = token_expiry(VERIFICATION_TOKEN_HOURS)
    db.commit()

    return user.verification_token


def verify_email(token: str) -> Tuple[Optional[User], Optional[str]]:
    """
    Mark the token's owner as verified. Tokens are single-use.

    Returns:
        (user, None) on success
        (None, error_message) on failure
    """
    if not token:
        return None, "Verification token is required"

    db = get_db()

    user = db.query(User).filter_by(verification_token=token).first()
    if not user:
        return None, "Invalid or expired verification link"

    if user.verification_token_expires and user.verification_token_expires < utcnow():
        return None, "Invalid or expired verification link"

    user.email_verified = True
    user.verification_token = None
    user.verification_token_expires = None
    db.commit()

    print(f"[Auth] Email verified: {user.email}")
    audit.log_request_event(AuditEvent.AUTH_EMAIL_VERIFIED, user_id=user.id)
    return user, None


# =============================================================================
# PASSWORD RESET
# =============================================================================

def request_password_reset(email: str) -> Optional[Tuple[User, str]]:
    """
    Issue a password reset token.

    Returns:
        (user, token), or None if no active account has that email. Callers
        respond identically either way so accounts cannot be enumerated.
    """
    if not email:
        return None

    db = get_db()

    user = db.query(User).filter_by(email=email.strip().lower()).first()
    if not user or not user.is_active:
        return None

    user.password_reset_token = _new_token()
    user.password_reset_expires = token_expiry(PASSWORD_RESET_TOKEN_HOURS)
    db.commit()

    return user, user.password_reset_token


def reset_password(token: str, new_password: str) -> Tuple[bool, Optional[str]]:
    """Consume a reset token and set the new password. Returns (ok, message)."""
    if not token:
        return False, "Reset token is required"

    valid, error = validate_password(new_password)
    if not valid:
        return False, error

    db = get_db()

    user = db.query(User).filter_by(password_reset_token=token).first()
    if not user:
        return False, "Invalid or expired reset link"

    if not user.password_reset_expires or user.password_reset_expires < utcnow():
        return False, "Invalid or expired reset link"

    user.set_password(new_password)
    user.password_reset_token = None
    user.password_reset_expires = None
    db.commit()

    print(f"[Auth] Password reset for {user.email}")
    audit.log_request_event(AuditEvent.AUTH_PASSWORD_RESET, user_id=user.id)
    return True, None
