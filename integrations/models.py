"""
integrations/models.py

SQLAlchemy models for procurement-platform connections.

Tables:
    - integration_oauth_states: Pending authorization requests (single-use, 10 min)
    - user_integrations: One connection per (user, provider), tokens encrypted

Version History:
    2026-01-12: Initial implementation
"""

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, ForeignKey, Index, UniqueConstraint
)

from billing.db import utcnow
from billing.models import Base, JSONType


class IntegrationStatus:
    ACTIVE = 'active'
    ERROR = 'error'
    REVOKED = 'revoked'

    ALL = (ACTIVE, ERROR, REVOKED)


class IntegrationOAuthState(Base):
    """
    An issued OAuth `state` value.

    Deleted when the callback consumes it, or by purge once expired.
    """
    __tablename__ = 'integration_oauth_states'

    state = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    provider = Column(String(50), nullable=False)
    redirect_uri = Column(Text)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def is_expired(self) -> bool:
        return utcnow() > self.expires_at

    def __repr__(self):
        return f'<IntegrationOAuthState {self.provider} user={self.user_id}>'


Index('idx_integration_oauth_states_expires', IntegrationOAuthState.expires_at)


class UserIntegration(Base):
    """
    A connected procurement platform.

    access_token / refresh_token hold ciphertext from encryption.TokenEncryption.
    """
    __tablename__ = 'user_integrations'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    provider = Column(String(50), nullable=False)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    expires_at = Column(DateTime)

    status = Column(String(20), default=IntegrationStatus.ACTIVE, nullable=False)
    metadata_json = Column('metadata', JSONType, default=dict)

    last_sync_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', name='uq_user_integrations_user_provider'),
    )

    def __repr__(self):
        return f'<UserIntegration {self.provider} user={self.user_id} {self.status}>'
