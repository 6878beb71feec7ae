"""
integrations/connector.py

IntegrationConnector - OAuth 2.0 authorization-code flow for procurement
platforms.

Lifecycle per (user, provider):
    unconfigured -> authorizing -> connected -> disconnected

    1. get_authorization_url() issues a single-use `state` (10 min) and
       returns the provider's consent URL
    2. The provider redirects the browser to the shared callback with
       ?code=&state=; provider_for_state() tells the callback which
       provider the state was issued for
    3. exchange_code_for_tokens() consumes the state and trades the code
       for tokens, stored encrypted in user_integrations

The connector never reads the environment: it is built from the explicit
provider map produced by config.load_integration_configs().

Usage:
    from integrations.connector import get_connector

    connector = get_connector()
    url, state = connector.get_authorization_url('oracle', user.id, request.host_url)

Version History:
    2026-01-12: Initial implementation
"""

import secrets
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from sqlalchemy.exc import IntegrityError

from audit_log import audit, AuditEvent
from billing.db import get_db, utcnow
from config import INTEGRATION_REDIRECT_URI, OAUTH_STATE_TTL_MINUTES, load_integration_configs
from encryption import TokenEncryption, get_token_cipher
from errors import NotConfigured, NotFound, InvalidState, StateExpired, RequestFailed, ValidationError
from integrations.models import IntegrationOAuthState, UserIntegration, IntegrationStatus
from integrations.providers import ProviderConfig
from retry import with_retry


TOKEN_REQUEST_TIMEOUT = 30
TOKEN_EXCHANGE_ATTEMPTS = 2
TOKEN_EXCHANGE_DELAY = 2.0


class IntegrationConnector:
    """
    OAuth2 connector for all supported providers.

    Args:
        configs: {provider_key: ProviderConfig}
        redirect_path: Callback path (or absolute URL) registered with providers
        session: requests.Session used for token requests
        cipher: Token cipher for stored credentials
        state_ttl_minutes: Lifetime of an issued state
        retry_delay: Seconds between token exchange attempts
        sleep: Injected for tests
    """

    def __init__(
        self,
        configs: Dict[str, ProviderConfig],
        redirect_path: str = INTEGRATION_REDIRECT_URI,
        session: Optional[requests.Session] = None,
        cipher: Optional[TokenEncryption] = None,
        state_ttl_minutes: int = OAUTH_STATE_TTL_MINUTES,
        retry_delay: float = TOKEN_EXCHANGE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.configs = dict(configs)
        self.redirect_path = redirect_path
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        self.cipher = cipher or get_token_cipher()
        self.state_ttl = timedelta(minutes=state_ttl_minutes)
        self.retry_delay = retry_delay
        self._sleep = sleep

    # =========================================================================
    # PROVIDERS
    # =========================================================================

    def _config(self, provider: str) -> ProviderConfig:
        config = self.configs.get(provider)
        if config is None:
            raise NotFound(f'Unknown integration: {provider}')
        return config

    def _configured(self, provider: str) -> ProviderConfig:
        config = self._config(provider)
        if not config.configured:
            raise NotConfigured(f'Integration {provider} is not configured. Contact support to enable.')
        return config

    def is_configured(self, provider: str) -> bool:
        config = self.configs.get(provider)
        return bool(config and config.configured)

    def _redirect_uri(self, base_url: str) -> str:
        if self.redirect_path.startswith(('http://', 'https://')):
            return self.redirect_path
        return f"{base_url.rstrip('/')}{self.redirect_path}"

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    def get_authorization_url(self, provider: str, user_id: int, base_url: str) -> Tuple[str, str]:
        """
        Start the flow for one provider.

        Returns:
            (consent url, state)

        Raises:
            NotFound: unknown provider
            NotConfigured: provider has no client credentials (nothing stored)
        """
        config = self._configured(provider)
        self.purge_expired_states()

        state = secrets.token_hex(24)
        redirect_uri = self._redirect_uri(base_url)

        db = get_db()
        db.add(IntegrationOAuthState(
            state=state,
            user_id=user_id,
            provider=provider,
            redirect_uri=redirect_uri,
            expires_at=utcnow() + self.state_ttl,
        ))
        db.commit()

        params = urlencode({
            'client_id': config.client_id,
            'redirect_uri': redirect_uri,
            'response_type': 'code',
            'scope': config.scope,
            'state': state,
        })

        print(f"[Integrations] Authorization started: {provider} for user {user_id}")
        audit.log_event(AuditEvent.INTEGRATION_AUTHORIZE, user_id=user_id, details={'provider': provider})

        return f"{config.auth_url}?{params}", state

    def provider_for_state(self, state: str) -> str:
        """Provider a pending state was issued for."""
        record = get_db().get(IntegrationOAuthState, state) if state else None
        if record is None:
            raise InvalidState()
        return record.provider

    def _consume_state(self, provider: str, state: str) -> IntegrationOAuthState:
        """
        Validate and delete a state. Exactly one caller can consume it.

        Raises:
            InvalidState: unknown, already used, or issued for another provider
            StateExpired: past expires_at (the row is purged)
        """
        db = get_db()

        record = db.get(IntegrationOAuthState, state) if state else None
        if record is None or record.provider != provider:
            audit.log_event(AuditEvent.INTEGRATION_STATE_INVALID, details={'provider': provider})
            raise InvalidState()

        # Detached copy stays readable after the row is gone
        db.expunge(record)
        consumed = record

        deleted = db.query(IntegrationOAuthState).filter(
            IntegrationOAuthState.state == state
        ).delete(synchronize_session=False)
        db.commit()

        if consumed.is_expired:
            audit.log_event(AuditEvent.INTEGRATION_STATE_EXPIRED, user_id=consumed.user_id,
                            details={'provider': provider})
            raise StateExpired()

        if deleted != 1:
            # A concurrent callback consumed it first
            audit.log_event(AuditEvent.INTEGRATION_STATE_INVALID, user_id=consumed.user_id,
                            details={'provider': provider, 'reason': 'already consumed'})
            raise InvalidState()

        return consumed

    # =========================================================================
    # TOKEN EXCHANGE
    # =========================================================================

    def _request_tokens(self, config: ProviderConfig, code: str, redirect_uri: Optional[str]) -> dict:
        """One POST to the token endpoint. Raises RequestFailed."""
        try:
            response = self.session.post(
                config.token_url,
                data={
                    'grant_type': 'authorization_code',
                    'code': code,
                    'redirect_uri': redirect_uri or '',
                    'client_id': config.client_id,
                    'client_secret': config.client_secret,
                },
                timeout=TOKEN_REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise RequestFailed(f'Token request failed: {e}')

        if not response.ok:
            raise RequestFailed(response.text[:500] or 'Token exchange failed', response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise RequestFailed('Token endpoint returned invalid JSON', response.status_code)

        if not isinstance(data, dict) or not data.get('access_token'):
            raise RequestFailed('Token endpoint returned no access token', response.status_code)

        return data

    def exchange_code_for_tokens(self, provider: str, code: str, state: str) -> int:
        """
        Finish the flow: consume state, exchange the code, store tokens.

        Returns:
            The user id the state was issued to

        Raises:
            NotFound / NotConfigured: provider problems
            ValidationError: no code
            InvalidState / StateExpired: state problems
            RequestFailed: token endpoint error after retries
        """
        config = self._configured(provider)

        if not code:
            raise ValidationError('Authorization code is required')

        record = self._consume_state(provider, state)
        user_id = record.user_id

        try:
            tokens = with_retry(
                lambda: self._request_tokens(config, code, record.redirect_uri),
                max_attempts=TOKEN_EXCHANGE_ATTEMPTS,
                delay=self.retry_delay,
                label=f'Token exchange ({provider})',
                retry_on=(RequestFailed,),
                should_retry=lambda e: e.is_transient,
                sleep=self._sleep,
            )
        except RequestFailed as e:
            print(f"[Integrations] Token exchange failed for {provider}, user {user_id}: {e.message}")
            audit.log_event(
                AuditEvent.INTEGRATION_FAILED,
                user_id=user_id,
                details={'provider': provider, 'status_code': e.upstream_status},
            )
            raise

        self._store_tokens(user_id, provider, tokens)

        print(f"[Integrations] Connected {provider} for user {user_id}")
        audit.log_event(AuditEvent.INTEGRATION_CONNECTED, user_id=user_id, details={'provider': provider})
        return user_id

    def _store_tokens(self, user_id: int, provider: str, tokens: dict):
        """Upsert the (user, provider) row with fresh encrypted tokens."""
        db = get_db()
        now = utcnow()

        expires_in = tokens.get('expires_in')
        try:
            expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
        except (TypeError, ValueError):
            expires_at = None

        values = {
            'access_token': self.cipher.encrypt(user_id, tokens['access_token']),
            'refresh_token': self.cipher.encrypt(user_id, tokens.get('refresh_token')),
            'expires_at': expires_at,
            'status': IntegrationStatus.ACTIVE,
            'last_sync_at': now,
            'metadata_json': {},
        }

        for _ in range(2):
            integration = db.query(UserIntegration).filter_by(user_id=user_id, provider=provider).first()
            if integration is None:
                integration = UserIntegration(user_id=user_id, provider=provider)
                db.add(integration)
            for key, value in values.items():
                setattr(integration, key, value)
            try:
                db.commit()
                return
            except IntegrityError:
                # Concurrent insert for the same pair; retry as an update
                db.rollback()

        raise RuntimeError(f'Could not store {provider} tokens for user {user_id}')

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    def get_access_token(self, user_id: int, provider: str) -> Optional[str]:
        """Decrypted access token of an active connection."""
        integration = get_db().query(UserIntegration).filter_by(
            user_id=user_id, provider=provider, status=IntegrationStatus.ACTIVE
        ).first()
        if integration is None:
            return None
        return self.cipher.decrypt(user_id, integration.access_token)

    def disconnect_integration(self, user_id: int, provider: str) -> bool:
        """
        Remove the connection. Idempotent.

        Returns:
            True if a connection was removed
        """
        self._config(provider)

        db = get_db()
        deleted = db.query(UserIntegration).filter_by(
            user_id=user_id, provider=provider
        ).delete(synchronize_session=False)
        db.commit()

        if deleted:
            print(f"[Integrations] Disconnected {provider} for user {user_id}")
            audit.log_event(AuditEvent.INTEGRATION_DISCONNECTED, user_id=user_id, details={'provider': provider})
        return bool(deleted)

    def get_user_integrations(self, user_id: int) -> List[dict]:
        """One entry per supported provider, connected or not."""
        rows = get_db().query(UserIntegration).filter_by(user_id=user_id).all()
        by_provider = {row.provider: row for row in rows}

        result = []
        for key, config in self.configs.items():
            conn = by_provider.get(key)
            result.append({
                'provider': key,
                'name': config.display_name,
                'connected': conn is not None and conn.status == IntegrationStatus.ACTIVE,
                'configured': config.configured,
                'lastSyncAt': conn.last_sync_at.isoformat() if conn and conn.last_sync_at else None,
            })
        return result

    def purge_expired_states(self) -> int:
        """Delete all expired state rows. Returns how many were removed."""
        db = get_db()
        deleted = db.query(IntegrationOAuthState).filter(
            IntegrationOAuthState.expires_at < utcnow()
        ).delete(synchronize_session=False)
        db.commit()

        if deleted:
            print(f"[Integrations] Purged {deleted} expired OAuth state(s)")
        return deleted


# Module-level singleton, built from the environment once
_connector: Optional[IntegrationConnector] = None


def get_connector() -> IntegrationConnector:
    global _connector
    if _connector is None:
        _connector = IntegrationConnector(load_integration_configs())
    return _connector


def set_connector(connector: Optional[IntegrationConnector]):
    """Install a connector (tests build one with fake credentials and session)."""
    global _connector
    _connector = connector
