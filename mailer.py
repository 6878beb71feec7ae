"""
smartseek/mailer.py

Transactional email (verification, password reset) via the SendGrid v3 API.

When SENDGRID_API_KEY is not set the message is not sent; the link is
printed instead so local development keeps working.

Usage:
    from mailer import send_verification_email

    send_verification_email('buyer@example.com', token, 'https://smartseek.app')

Version History:
    2026-01-12: Initial implementation
"""

from typing import Optional

import requests

from config import SENDGRID_API_KEY, SENDGRID_FROM_EMAIL


SENDGRID_URL = 'https://api.sendgrid.com/v3/mail/send'
SEND_TIMEOUT_SECONDS = 10


def send_email(to_email: str, subject: str, text: str, html: Optional[str] = None,
               session: Optional[requests.Session] = None) -> bool:
    """
    Send one email.

    Returns:
        True if SendGrid accepted the message, False otherwise (logged,
        never raised: a failed email must not fail the request)
    """
    if not SENDGRID_API_KEY:
        print(f"[Mailer] SENDGRID_API_KEY not set; not sending '{subject}' to {to_email}")
        print(f"[Mailer] {text}")
        return False

    content = [{'type': 'text/plain', 'value': text}]
    if html:
        content.append({'type': 'text/html', 'value': html})

    payload = {
        'personalizations': [{'to': [{'email': to_email}]}],
        'from': {'email': SENDGRID_FROM_EMAIL, 'name': 'SmartSeek'},
        'subject': subject,
        'content': content,
    }

    http = session or requests
    try:
        response = http.post(
            SENDGRID_URL,
            json=payload,
            headers={'Authorization': f'Bearer {SENDGRID_API_KEY}'},
            timeout=SEND_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        print(f"[Mailer] Send failed for {to_email}: {e}")
        return False

    if response.status_code >= 400:
        print(f"[Mailer] SendGrid returned {response.status_code} for {to_email}: {response.text[:200]}")
        return False

    print(f"[Mailer] Sent '{subject}' to {to_email}")
    return True


def send_verification_email(to_email: str, token: str, base_url: str) -> bool:
    link = f"{base_url.rstrip('/')}/verify-email?token={token}"
    text = (
        "Thank you for signing up for SmartSeek! Please open the link below to verify "
        f"your email address:\n\n{link}\n\nThis link expires in 24 hours."
    )
    html = (
        "<p>Thank you for signing up for SmartSeek! Please click the button below to verify "
        "your email address and activate your account.</p>"
        f'<p><a href="{link}">Verify Email Address</a></p>'
        "<p>This link expires in 24 hours.</p>"
    )
    return send_email(to_email, 'Verify your SmartSeek account', text, html)


def send_password_reset_email(to_email: str, token: str, base_url: str) -> bool:
    link = f"{base_url.rstrip('/')}/reset-password?token={token}"
    text = (
        "We received a request to reset your SmartSeek password. Open the link below "
        f"to choose a new one:\n\n{link}\n\nThis link expires in 1 hour. "
        "If you didn't request this, you can ignore this email."
    )
    html = (
        "<p>We received a request to reset your SmartSeek password.</p>"
        f'<p><a href="{link}">Reset Password</a></p>'
        "<p>This link expires in 1 hour. If you didn't request this, you can ignore this email.</p>"
    )
    return send_email(to_email, 'Reset your SmartSeek password', text, html)
