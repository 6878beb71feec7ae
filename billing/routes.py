"""
billing/routes.py

Flask Blueprint for accounts, profiles, credits and Stripe.

Endpoints:
    Auth:
        POST /api/auth/signup - Create account (sends verification email)
        POST /api/auth/login - Login
        POST /api/auth/logout - Logout
        GET  /api/auth/user - Current user
        GET  /api/auth/verify-email?token= - Verify email address
        POST /api/auth/resend-verification - New verification email
        POST /api/auth/forgot-password - Send reset link
        POST /api/auth/reset-password - Set new password with reset token

    Profile & credits:
        GET   /api/profile - Profile (created with free trial on first access)
        PATCH /api/profile - Update region / currency
        GET   /api/credits/balance - Balance
        GET   /api/credits/transactions - History, newest first
        POST  /api/admin/credits/adjust - Admin adjustment

    Stripe:
        GET  /api/stripe/config - Publishable key
        POST /api/stripe/create-payment-intent - Buy credits
        POST /api/stripe/create-embedded-subscription - Start Pro plan
        POST /api/stripe/confirm-payment - Top up after client confirmation
        GET  /api/stripe/products - Active products and prices
        POST /api/stripe/create-subscription-checkout - Hosted Pro checkout
        POST /api/stripe/create-credit-checkout - Hosted credit checkout
        POST /api/stripe/create-portal-session - Billing portal link
        POST /api/stripe/sync-subscription - Refresh plan from Stripe
        POST /api/stripe/webhook - Stripe webhook handler

Errors are raised as AppError subclasses and rendered by app.py.

Version History:
    2026-01-12: SmartSeek endpoints under /api
"""

from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, current_user

from billing.auth import (
    register_user, authenticate_user, verify_email as verify_email_token,
    issue_verification_token, request_password_reset, reset_password as reset_password_token,
)
from billing.config import DEFAULT_HISTORY_LIMIT
from billing.db import get_db
from billing.decorators import requires_auth, requires_admin, requires_verified_email
from billing.ledger import ensure_profile, get_balance, get_transactions, adjust
from billing.models import User
from billing.service import billing_service
from config import FRONTEND_URL
from errors import ValidationError, AuthRequired, NotFound
from mailer import send_verification_email, send_password_reset_email


billing_bp = Blueprint('billing_bp', __name__, url_prefix='/api')

MAX_REGION_LENGTH = 200


def _base_url() -> str:
    """Where links in emails should point."""
    return FRONTEND_URL or request.host_url.rstrip('/')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


# =============================================================================
# AUTH ROUTES
# =============================================================================

@billing_bp.route('/auth/signup', methods=['POST'])
def signup():
    """
    Register a new user and log them in.

    Request:
        {
            "email": "buyer@example.com",
            "password": "secret1",
            "firstName": "Optional",
            "lastName": "Optional"
        }

    Response (201):
        {"id": 1, "email": "...", "firstName": "...", "lastName": "...", "emailVerified": false}
    """
    data = _json_body()

    user, error = register_user(
        (data.get('email') or '').strip(),
        data.get('password') or '',
        data.get('firstName'),
        data.get('lastName'),
    )

    if error:
        raise ValidationError(error)

    send_verification_email(user.email, user.verification_token, _base_url())

    # Auto-login after registration
    login_user(user, remember=True)

    return jsonify(user.to_dict()), 201


@billing_bp.route('/auth/login', methods=['POST'])
def login_route():
    """
    Login with email/password.

    Request:
        {"email": "buyer@example.com", "password": "secret1", "remember": true}
    """
    data = _json_body()

    email = (data.get('email') or '').strip()
    password = data.get('password') or ''

    if not email or not password:
        raise ValidationError('Email and password are required')

    user = authenticate_user(email, password)

    if not user:
        raise AuthRequired('Invalid email or password')

    login_user(user, remember=bool(data.get('remember', False)))

    return jsonify(user.to_dict())


@billing_bp.route('/auth/logout', methods=['POST'])
def logout_route():
    logout_user()
    return jsonify({'message': 'Logged out successfully'})


@billing_bp.route('/auth/user', methods=['GET'])
@requires_auth
def auth_user():
    return jsonify(current_user.to_dict())


@billing_bp.route('/auth/verify-email', methods=['GET'])
def verify_email():
    user, error = verify_email_token(request.args.get('token', ''))

    if error:
        raise ValidationError(error)

    return jsonify({'message': 'Email verified', 'user': user.to_dict()})


@billing_bp.route('/auth/resend-verification', methods=['POST'])
@requires_auth
def resend_verification():
    db = get_db()
    user = db.get(User, current_user.id)

    if user.email_verified:
        return jsonify({'message': 'Email already verified'})

    token = issue_verification_token(user)
    send_verification_email(user.email, token, _base_url())

    return jsonify({'message': 'Verification email sent'})


@billing_bp.route('/auth/forgot-password', methods=['POST'])
def forgot_password():
    """
    Send a password reset link.

    Always answers 200 so the endpoint cannot be used to probe for accounts.
    """
    data = _json_body()

    issued = request_password_reset(data.get('email') or '')
    if issued:
        user, token = issued
        send_password_reset_email(user.email, token, _base_url())

    return jsonify({'message': 'If an account exists for that email, a reset link has been sent'})


@billing_bp.route('/auth/reset-password', methods=['POST'])
def reset_password():
    data = _json_body()

    ok, error = reset_password_token(data.get('token') or '', data.get('password') or '')
    if not ok:
        raise ValidationError(error)

    return jsonify({'message': 'Password updated'})


# =============================================================================
# PROFILE & CREDITS
# =============================================================================

@billing_bp.route('/profile', methods=['GET'])
@requires_auth
def get_profile():
    profile = ensure_profile(current_user.id)
    return jsonify(profile.to_dict())


@billing_bp.route('/profile', methods=['PATCH'])
@requires_auth
def update_profile():
    """
    Update profile preferences.

    Only region and currency are writable; role, plan and credits are not.

    Request:
        {"region": "Europe", "currency": "EUR"}
    """
    data = _json_body()
    profile = ensure_profile(current_user.id)

    if 'region' in data:
        region = data['region']
        if not isinstance(region, str) or not region.strip() or len(region) > MAX_REGION_LENGTH:
            raise ValidationError('Invalid region')
        profile.region = region.strip()

    if 'currency' in data:
        currency = data['currency']
        if not isinstance(currency, str) or len(currency.strip()) != 3 or not currency.strip().isalpha():
            raise ValidationError('Currency must be a 3-letter code')
        profile.currency = currency.strip().upper()

    get_db().commit()

    return jsonify(profile.to_dict())


@billing_bp.route('/credits/balance', methods=['GET'])
@requires_auth
def balance():
    ensure_profile(current_user.id)
    return jsonify({'credits': get_balance(current_user.id)})


@billing_bp.route('/credits/transactions', methods=['GET'])
@requires_auth
def transactions():
    """
    Credit history, newest first.

    Query:
        limit: max entries (default 50, capped at 200)
    """
    limit = request.args.get('limit', DEFAULT_HISTORY_LIMIT, type=int)
    entries = get_transactions(current_user.id, limit=limit)
    return jsonify([entry.to_dict() for entry in entries])


@billing_bp.route('/admin/credits/adjust', methods=['POST'])
@requires_admin
def admin_adjust():
    """
    Admin credit adjustment.

    Request:
        {"userId": 42, "delta": -3, "description": "Duplicate report refund reversal"}
    """
    data = _json_body()

    try:
        user_id = int(data.get('userId'))
        delta = int(data.get('delta'))
    except (TypeError, ValueError):
        raise ValidationError('userId and delta must be integers')

    description = (data.get('description') or '').strip()

    if get_db().get(User, user_id) is None:
        raise NotFound('User not found')
    ensure_profile(user_id)

    entry = adjust(user_id, delta, description, admin_id=current_user.id)

    return jsonify({
        'credits': get_balance(user_id),
        'transaction': entry.to_dict() if entry else None,
    })


# =============================================================================
# STRIPE
# =============================================================================

@billing_bp.route('/stripe/config', methods=['GET'])
def stripe_config():
    return jsonify(billing_service.get_config())


@billing_bp.route('/stripe/create-payment-intent', methods=['POST'])
@requires_verified_email
def create_payment_intent():
    """
    Start a credit purchase.

    Request:
        {"quantity": 5}

    Response:
        {"clientSecret": "...", "paymentIntentId": "pi_...", "credits": 5, "amount": 5000}
    """
    data = _json_body()
    result = billing_service.create_payment_intent(current_user.id, data.get('quantity', 1))
    return jsonify(result)


@billing_bp.route('/stripe/create-embedded-subscription', methods=['POST'])
@requires_verified_email
def create_embedded_subscription():
    data = _json_body()
    result = billing_service.create_embedded_subscription(current_user.id, data.get('priceId'))
    return jsonify(result)


@billing_bp.route('/stripe/confirm-payment', methods=['POST'])
@requires_auth
def confirm_payment():
    """
    Top up credits for a succeeded payment intent (idempotent).

    Request:
        {"paymentIntentId": "pi_..."}

    Response:
        {"success": true, "credits": 5, "balance": 7, "alreadyProcessed": false}
    """
    data = _json_body()
    result = billing_service.confirm_payment(current_user.id, data.get('paymentIntentId'))
    return jsonify(result)


@billing_bp.route('/stripe/webhook', methods=['POST'])
def webhook():
    """
    Handle Stripe webhook.

    Must read the raw body: the signature covers the exact bytes sent.
    """
    payload = request.get_data()
    signature = request.headers.get('Stripe-Signature', '')

    result = billing_service.handle_webhook(payload, signature)
    return jsonify(result)


@billing_bp.route('/stripe/products', methods=['GET'])
def stripe_products():
    return jsonify(billing_service.get_products())


@billing_bp.route('/stripe/create-subscription-checkout', methods=['POST'])
@requires_verified_email
def create_subscription_checkout():
    """
    Hosted Checkout for the Pro plan.

    Request:
        {"priceId": "price_..."}    (optional, defaults to the Pro price)

    Response:
        {"url": "https://checkout.stripe.com/..."}
    """
    data = _json_body()
    result = billing_service.create_subscription_checkout(current_user.id, data.get('priceId'), _base_url())
    return jsonify(result)


@billing_bp.route('/stripe/create-credit-checkout', methods=['POST'])
@requires_verified_email
def create_credit_checkout():
    data = _json_body()
    result = billing_service.create_credit_checkout(
        current_user.id, data.get('priceId'), data.get('quantity', 1), _base_url()
    )
    return jsonify(result)


@billing_bp.route('/stripe/create-portal-session', methods=['POST'])
@requires_auth
def create_portal_session():
    return jsonify(billing_service.create_portal_session(current_user.id, _base_url()))


@billing_bp.route('/stripe/sync-subscription', methods=['POST'])
@requires_auth
def sync_subscription():
    """Refresh the plan from the provider, e.g. right after checkout."""
    return jsonify(billing_service.sync_subscription(current_user.id))
