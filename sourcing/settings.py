"""
sourcing/settings.py

Admin key/value settings (feature flags, banner text, pricing copy).
"""

import re

from sqlalchemy.exc import IntegrityError

from audit_log import audit, AuditEvent
from billing.db import get_db
from billing.models import AppSetting
from errors import NotFound, ValidationError


_KEY_RE = re.compile(r'^[A-Za-z0-9_.-]{1,100}$')


def _check_key(key: str):
    if not _KEY_RE.match(key or ''):
        raise ValidationError('Invalid setting key')


def get_setting(key: str) -> AppSetting:
    _check_key(key)
    setting = get_db().query(AppSetting).filter(AppSetting.key == key).first()
    if setting is None:
        raise NotFound(f'Setting not found: {key}')
    return setting


def put_setting(key: str, value, admin_id: int) -> AppSetting:
    """Create or replace a setting."""
    _check_key(key)
    if value is None:
        raise ValidationError('value is required')

    db = get_db()
    setting = db.query(AppSetting).filter(AppSetting.key == key).first()

    if setting is None:
        setting = AppSetting(key=key, value=value)
        db.add(setting)
        try:
            db.commit()
        except IntegrityError:
            # Created concurrently; overwrite it
            db.rollback()
            setting = db.query(AppSetting).filter(AppSetting.key == key).one()
            setting.value = value
            db.commit()
    else:
        setting.value = value
        db.commit()

    audit.log_request_event(
        AuditEvent.ADMIN_SETTING_CHANGED,
        user_id=admin_id,
        details={'key': key, 'admin_id': admin_id},
    )
    return setting
