"""
smartseek/audit_log.py

Append-only JSON Lines trail for money movements, payments, integration
connections and admin actions.

Every line is one JSON object carrying the UTC timestamp, the event name,
the affected user, a short correlation id and a filtered ``details`` map.
Tokens, authorization codes and OAuth state never reach the file: only
whitelisted detail keys are written verbatim, anything else is replaced
by the name of its type.

Usage:
    from audit_log import audit, AuditEvent

    audit.log_event(AuditEvent.CREDITS_SPENT, user_id=user_id,
                    details={'amount': 1, 'balance_after': 4})

    # inside a view, client address and route are attached automatically
    audit.log_request_event(AuditEvent.INTEGRATION_CONNECTED, user_id=user_id,
                            details={'provider': 'oracle'})
"""

import os
import json
import uuid
import fcntl
import threading
from enum import Enum
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List


DEFAULT_AUDIT_DIR = '/data/audit'
MAX_DETAIL_CHARS = 500
MAX_AGENT_CHARS = 200


class AuditEvent(Enum):
    """Event names written to the trail, grouped by prefix."""

    CREDITS_SPENT = "credits.spent"
    CREDITS_ADDED = "credits.added"
    CREDITS_ADJUSTED = "credits.adjusted"
    CREDITS_INSUFFICIENT = "credits.insufficient"

    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_WEBHOOK = "payment.webhook"
    SUBSCRIPTION_CHANGED = "subscription.changed"

    INTEGRATION_AUTHORIZE = "integration.authorize"
    INTEGRATION_CONNECTED = "integration.connected"
    INTEGRATION_DISCONNECTED = "integration.disconnected"
    INTEGRATION_FAILED = "integration.failed"
    INTEGRATION_STATE_INVALID = "integration.state_invalid"
    INTEGRATION_STATE_EXPIRED = "integration.state_expired"

    ADMIN_ACCESS_DENIED = "admin.access_denied"
    ADMIN_SETTING_CHANGED = "admin.setting_changed"
    ADMIN_REQUEST_UPDATED = "admin.request_updated"

    AUTH_SIGNUP = "auth.signup"
    AUTH_LOGIN_FAILED = "auth.login_failed"
    AUTH_EMAIL_VERIFIED = "auth.email_verified"
    AUTH_PASSWORD_RESET = "auth.password_reset"


def _client_context() -> Dict[str, str]:
    """Caller address, agent and route for the active Flask request, or {}."""
    from flask import request, has_request_context

    if not has_request_context():
        return {}

    forwarded = request.headers.get('X-Forwarded-For', '')
    # leftmost hop is the original client
    address = forwarded.split(',')[0].strip() if forwarded else request.remote_addr

    return {
        'ip_address': address or 'unknown',
        'user_agent': request.headers.get('User-Agent', 'unknown')[:MAX_AGENT_CHARS],
        'request_path': request.path,
        'request_method': request.method,
    }


class AuditLogger:
    """
    Writes audit entries to ``<AUDIT_LOG_DIR>/audit.log``.

    Writes are serialized twice: a thread lock inside the process and an
    exclusive ``flock`` across worker processes sharing the file. When the
    directory cannot be created the logger degrades to stdout only.
    """

    SAFE_KEYS = frozenset({
        'amount', 'balance_after', 'description', 'type', 'required',
        'available', 'provider', 'status', 'reason', 'error_type',
        'error_message', 'endpoint', 'status_code', 'attempt_count',
        'event_type', 'event_id', 'credits', 'plan', 'key', 'request_id',
        'report_id', 'admin_id', 'from_status', 'to_status',
    })

    def __init__(self, log_path: Optional[Path] = None):
        self._lock = threading.Lock()
        if log_path is None:
            log_path = Path(os.environ.get('AUDIT_LOG_DIR', DEFAULT_AUDIT_DIR)) / 'audit.log'
        self._log_path = Path(log_path)
        self._enabled = self._prepare()

    @property
    def log_path(self) -> Path:
        return self._log_path

    def _prepare(self) -> bool:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_path.touch(exist_ok=True)
        except OSError as e:
            print(f"[Audit] Cannot open {self._log_path} ({e}); entries go to stdout only")
            return False
        print(f"[Audit] Trail file: {self._log_path}")
        return True

    def _filter_details(self, details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        filtered = {}
        for key, value in (details or {}).items():
            if key not in self.SAFE_KEYS and not key.startswith('request_'):
                filtered[f'_skipped_{key}'] = type(value).__name__
                continue
            if isinstance(value, str) and len(value) > MAX_DETAIL_CHARS:
                value = value[:MAX_DETAIL_CHARS] + '...'
            filtered[key] = value
        return filtered

    def log_event(
        self,
        event_type: AuditEvent,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append one entry and return it as written."""
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'event': event_type.value,
            'user_id': user_id,
            'request_id': request_id or uuid.uuid4().hex[:8],
            'details': self._filter_details(details),
        }
        if ip_address:
            entry['ip_address'] = ip_address
        if user_agent:
            entry['user_agent'] = user_agent[:MAX_AGENT_CHARS]

        self._append(entry)
        return entry

    def log_request_event(
        self,
        event_type: AuditEvent,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        context = _client_context()
        merged = dict(details or {})
        merged.update({k: v for k, v in context.items() if k.startswith('request_')})

        return self.log_event(
            event_type,
            user_id=user_id,
            details=merged,
            ip_address=context.get('ip_address'),
            user_agent=context.get('user_agent'),
        )

    def _append(self, entry: Dict[str, Any]) -> None:
        print(f"[AUDIT] {entry['event']} user={entry['user_id'] or 'none'}")
        if not self._enabled:
            return

        line = json.dumps(entry, default=str)
        with self._lock:
            try:
                with open(self._log_path, 'a', encoding='utf-8') as handle:
                    fcntl.flock(handle, fcntl.LOCK_EX)
                    try:
                        handle.write(line + '\n')
                        handle.flush()
                        os.fsync(handle.fileno())
                    finally:
                        fcntl.flock(handle, fcntl.LOCK_UN)
            except OSError as e:
                print(f"[Audit] Write failed: {e}")

    def get_recent_events(
        self,
        count: int = 100,
        event_type: Optional[AuditEvent] = None,
        user_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Newest-first entries, optionally narrowed to one event or user."""
        if not self._enabled:
            return []

        try:
            with open(self._log_path, encoding='utf-8') as handle:
                lines = handle.read().splitlines()
        except OSError as e:
            print(f"[Audit] Read failed: {e}")
            return []

        wanted = event_type.value if event_type else None
        matches = []
        for raw in reversed(lines):
            if len(matches) >= count:
                break
            try:
                entry = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if wanted and entry.get('event') != wanted:
                continue
            if user_id is not None and entry.get('user_id') != user_id:
                continue
            matches.append(entry)
        return matches


_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    global _logger
    if _logger is None:
        _logger = AuditLogger()
    return _logger


audit = get_audit_logger()
