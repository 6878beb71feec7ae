"""
billing/decorators.py

Decorators for route protection.

Failures are raised as AppError subclasses and rendered by the app's error
handler, so every protected route answers {"error", "code"} the same way.

Usage:
    from billing.decorators import requires_auth, requires_admin

    @bp.route('/api/reports', methods=['POST'])
    @requires_auth
    @requires_verified_email
    def create_report():
        ...

    @bp.route('/api/admin/leads')
    @requires_admin
    def admin_leads():
        ...

Version History:
    2026-01-12: Raise AppErrors; admin role read from the profile
"""

from functools import wraps

from flask_login import current_user

from audit_log import audit, AuditEvent
from billing.ledger import get_profile
from errors import AuthRequired, Forbidden


def requires_auth(f):
    """
    Decorator that requires user to be authenticated.

    Raises AuthRequired (401) if not logged in.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            raise AuthRequired()
        return f(*args, **kwargs)
    return decorated_function


def requires_verified_email(f):
    """
    Decorator for paid actions: the account's email must be verified.

    Raises AuthRequired (401) or Forbidden (403, EMAIL_NOT_VERIFIED).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            raise AuthRequired()
        if not current_user.email_verified:
            raise Forbidden('Please verify your email address first', code='EMAIL_NOT_VERIFIED')
        return f(*args, **kwargs)
    return decorated_function


def requires_admin(f):
    """
    Decorator that requires the user's profile role to be admin.

    Raises AuthRequired (401) or Forbidden (403).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            raise AuthRequired()

        profile = get_profile(current_user.id)
        if profile is None or not profile.is_admin:
            audit.log_request_event(AuditEvent.ADMIN_ACCESS_DENIED, user_id=current_user.id)
            raise Forbidden('Admin access required')

        return f(*args, **kwargs)
    return decorated_function
