"""
smartseek/errors.py

Application error taxonomy.

Every error a route can surface derives from AppError and carries its HTTP
status and a stable machine-readable code. The Flask error handler in app.py
renders them as:

    {"error": "<message>", "code": "<CODE>"}

Usage:
    from errors import InsufficientCredits, NotFound

    if profile is None:
        raise NotFound('Profile not found')

Version History:
    2026-01-12: Initial implementation
"""

from typing import Optional


class AppError(Exception):
    """Base class for errors rendered as JSON responses."""
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message: str = 'Internal server error', status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {'error': self.message, 'code': self.code}


class ValidationError(AppError):
    status_code = 400
    code = 'VALIDATION_ERROR'


class AuthRequired(AppError):
    status_code = 401
    code = 'AUTH_REQUIRED'

    def __init__(self, message: str = 'Not authenticated'):
        super().__init__(message)


class InsufficientCredits(AppError):
    """Balance is lower than the amount a paid action costs."""
    status_code = 402
    code = 'INSUFFICIENT_CREDITS'

    def __init__(self, required: int, available: Optional[int] = None):
        message = f'Insufficient credits ({required} required)'
        super().__init__(message)
        self.required = required
        self.available = available

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['required'] = self.required
        return data


class Forbidden(AppError):
    status_code = 403
    code = 'FORBIDDEN'


class NotFound(AppError):
    status_code = 404
    code = 'NOT_FOUND'


class InvalidTransition(AppError):
    status_code = 409
    code = 'INVALID_TRANSITION'


class NotConfigured(AppError):
    """A provider (integration, payments, email) has no credentials."""
    status_code = 503
    code = 'NOT_CONFIGURED'


class InvalidState(AppError):
    """OAuth state unknown, already used, or issued for another provider."""
    status_code = 400
    code = 'INVALID_STATE'

    def __init__(self, message: str = 'Invalid state parameter'):
        super().__init__(message)


class StateExpired(AppError):
    status_code = 400
    code = 'STATE_EXPIRED'

    def __init__(self, message: str = 'State expired'):
        super().__init__(message)


class PaymentIncomplete(AppError):
    status_code = 400
    code = 'PAYMENT_INCOMPLETE'

    def __init__(self, status: str):
        super().__init__('Payment not completed')
        self.status = status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['status'] = self.status
        return data


class RequestFailed(AppError):
    """An upstream HTTP call returned an error or could not be made."""
    status_code = 502
    code = 'REQUEST_FAILED'

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status

    @property
    def is_transient(self) -> bool:
        """Network failures and upstream 5xx are worth retrying; 4xx are not."""
        return self.upstream_status is None or self.upstream_status >= 500
