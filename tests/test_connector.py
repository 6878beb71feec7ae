from datetime import timedelta
from urllib.parse import urlparse, parse_qs

import pytest
import requests

from billing.db import get_db, utcnow
from config import load_integration_configs
from conftest import FakeResponse, FakeSession
from encryption import TokenEncryption
from errors import NotConfigured, NotFound, InvalidState, StateExpired, RequestFailed
from integrations.connector import IntegrationConnector, set_connector
from integrations.models import IntegrationOAuthState, UserIntegration


ENV = {
    'INTEGRATION_ORACLE_CLIENT_ID': 'oracle-client',
    'INTEGRATION_ORACLE_CLIENT_SECRET': 'oracle-secret',
    'INTEGRATION_SALESFORCE_CLIENT_ID': 'sf-client',
    'INTEGRATION_SALESFORCE_CLIENT_SECRET': 'sf-secret',
}

TOKENS = {'access_token': 'at-123', 'refresh_token': 'rt-456', 'expires_in': 3600}


def build_connector(*responses):
    return IntegrationConnector(
        load_integration_configs(ENV),
        session=FakeSession(*responses),
        cipher=TokenEncryption('test-master-secret'),
        retry_delay=0,
        sleep=lambda s: None,
    )


def start(connector, user_id, provider='oracle'):
    url, state = connector.get_authorization_url(provider, user_id, 'http://localhost:5000/')
    return url, state


def test_unconfigured_provider_issues_no_state(make_user):
    user_id = make_user()
    connector = build_connector()

    with pytest.raises(NotConfigured):
        connector.get_authorization_url('coupa', user_id, 'http://localhost:5000')
    with pytest.raises(NotFound):
        connector.get_authorization_url('ebay', user_id, 'http://localhost:5000')

    assert get_db().query(IntegrationOAuthState).count() == 0


def test_authorization_url_carries_oauth_params(make_user):
    user_id = make_user()
    connector = build_connector()

    url, state = start(connector, user_id)

    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    assert url.startswith('https://login.oraclecloud.com/oauth2/v1/authorize?')
    assert params['client_id'] == ['oracle-client']
    assert params['redirect_uri'] == ['http://localhost:5000/api/integrations/oauth/callback']
    assert params['response_type'] == ['code']
    assert params['state'] == [state]
    assert len(state) == 48

    record = get_db().get(IntegrationOAuthState, state)
    assert record.user_id == user_id
    assert timedelta(minutes=9) < record.expires_at - utcnow() <= timedelta(minutes=10)


def test_exchange_stores_encrypted_tokens_and_consumes_state(make_user):
    user_id = make_user()
    connector = build_connector(FakeResponse(200, TOKENS))
    _, state = start(connector, user_id)

    assert connector.exchange_code_for_tokens('oracle', 'code-1', state) == user_id

    integration = get_db().query(UserIntegration).filter_by(user_id=user_id, provider='oracle').one()
    assert integration.status == 'active'
    assert integration.access_token != 'at-123'
    assert integration.last_sync_at is not None
    assert integration.expires_at > utcnow()
    assert connector.get_access_token(user_id, 'oracle') == 'at-123'
    assert get_db().get(IntegrationOAuthState, state) is None

    url, kwargs = connector.session.calls[0]
    assert url == 'https://login.oraclecloud.com/oauth2/v1/token'
    assert kwargs['data']['grant_type'] == 'authorization_code'
    assert kwargs['data']['code'] == 'code-1'


def test_state_is_single_use(make_user):
    user_id = make_user()
    connector = build_connector(FakeResponse(200, TOKENS), FakeResponse(200, TOKENS))
    _, state = start(connector, user_id)

    connector.exchange_code_for_tokens('oracle', 'code-1', state)

    with pytest.raises(InvalidState):
        connector.exchange_code_for_tokens('oracle', 'code-1', state)
    assert len(connector.session.calls) == 1


def test_state_rejected_for_other_provider(make_user):
    user_id = make_user()
    connector = build_connector(FakeResponse(200, TOKENS))
    _, state = start(connector, user_id, 'oracle')

    with pytest.raises(InvalidState):
        connector.exchange_code_for_tokens('salesforce', 'code-1', state)
    assert connector.session.calls == []


def test_expired_state_is_purged(make_user):
    user_id = make_user()
    connector = build_connector(FakeResponse(200, TOKENS))
    _, state = start(connector, user_id)

    db = get_db()
    db.get(IntegrationOAuthState, state).expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    with pytest.raises(StateExpired):
        connector.exchange_code_for_tokens('oracle', 'code-1', state)

    assert db.query(IntegrationOAuthState).count() == 0
    assert connector.session.calls == []


def test_server_errors_are_retried_once(make_user):
    user_id = make_user()
    connector = build_connector(FakeResponse(503, text='unavailable'), FakeResponse(200, TOKENS))
    _, state = start(connector, user_id)

    connector.exchange_code_for_tokens('oracle', 'code-1', state)

    assert len(connector.session.calls) == 2


def test_client_errors_fail_without_retry(make_user):
    user_id = make_user()
    connector = build_connector(FakeResponse(400, text='{"error": "invalid_grant"}'))
    _, state = start(connector, user_id)

    with pytest.raises(RequestFailed) as exc:
        connector.exchange_code_for_tokens('oracle', 'bad-code', state)

    assert exc.value.upstream_status == 400
    assert len(connector.session.calls) == 1
    assert get_db().query(UserIntegration).count() == 0


def test_network_errors_exhaust_attempts(make_user):
    user_id = make_user()
    connector = build_connector(requests.ConnectionError('reset'), requests.ConnectionError('reset'))
    _, state = start(connector, user_id)

    with pytest.raises(RequestFailed):
        connector.exchange_code_for_tokens('oracle', 'code-1', state)

    assert len(connector.session.calls) == 2


def test_reconnect_updates_existing_row(make_user):
    user_id = make_user()
    fresh = dict(TOKENS, access_token='at-789')
    connector = build_connector(FakeResponse(200, TOKENS), FakeResponse(200, fresh))

    _, state = start(connector, user_id)
    connector.exchange_code_for_tokens('oracle', 'code-1', state)
    _, state = start(connector, user_id)
    connector.exchange_code_for_tokens('oracle', 'code-2', state)

    assert get_db().query(UserIntegration).filter_by(user_id=user_id).count() == 1
    assert connector.get_access_token(user_id, 'oracle') == 'at-789'


def test_disconnect_is_idempotent(make_user):
    user_id = make_user()
    connector = build_connector(FakeResponse(200, TOKENS))
    _, state = start(connector, user_id)
    connector.exchange_code_for_tokens('oracle', 'code-1', state)

    assert connector.disconnect_integration(user_id, 'oracle') is True
    assert connector.disconnect_integration(user_id, 'oracle') is False
    assert connector.get_access_token(user_id, 'oracle') is None


def test_user_integrations_lists_every_provider(make_user):
    user_id = make_user()
    connector = build_connector(FakeResponse(200, TOKENS))
    _, state = start(connector, user_id)
    connector.exchange_code_for_tokens('oracle', 'code-1', state)

    entries = {e['provider']: e for e in connector.get_user_integrations(user_id)}

    assert set(entries) == {'sap_ariba', 'oracle', 'salesforce', 'microsoft_dynamics', 'coupa', 'jaggaer'}
    assert entries['oracle']['connected'] is True
    assert entries['oracle']['lastSyncAt'] is not None
    assert entries['salesforce']['connected'] is False
    assert entries['salesforce']['configured'] is True
    assert entries['coupa']['configured'] is False


def test_purge_expired_states(make_user):
    user_id = make_user()
    connector = build_connector()
    _, old = start(connector, user_id)
    _, live = start(connector, user_id)

    db = get_db()
    db.get(IntegrationOAuthState, old).expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    assert connector.purge_expired_states() == 1
    assert db.get(IntegrationOAuthState, live) is not None


def test_issuing_a_state_clears_abandoned_ones(make_user):
    user_id = make_user()
    connector = build_connector()
    _, abandoned = start(connector, user_id)

    db = get_db()
    db.get(IntegrationOAuthState, abandoned).expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    _, fresh = start(connector, user_id, provider='salesforce')

    db.expire_all()
    assert db.get(IntegrationOAuthState, abandoned) is None
    assert [s.state for s in db.query(IntegrationOAuthState).all()] == [fresh]


# =============================================================================
# ROUTES
# =============================================================================

def test_authorize_route_and_callback_redirect(client, make_user, login):
    user_id = make_user()
    connector = build_connector(FakeResponse(200, TOKENS))
    set_connector(connector)
    login(user_id)

    response = client.get('/api/integrations/oracle/authorize')
    assert response.status_code == 200
    state = parse_qs(urlparse(response.get_json()['url']).query)['state'][0]

    response = client.get(f'/api/integrations/oauth/callback?code=abc&state={state}')
    assert response.status_code == 302
    assert response.headers['Location'].endswith('/integrations?connected=oracle')

    listing = client.get('/api/integrations').get_json()
    assert {e['provider']: e['connected'] for e in listing}['oracle'] is True

    assert client.delete('/api/integrations/oracle').get_json() == {'success': True}
    assert client.delete('/api/integrations/oracle').status_code == 200


def test_callback_with_unknown_state_redirects_with_error(client):
    set_connector(build_connector())

    response = client.get('/api/integrations/oauth/callback?code=abc&state=nope')

    assert response.status_code == 302
    assert '/integrations?error=' in response.headers['Location']


def test_authorize_unconfigured_and_unknown(client, make_user, login):
    set_connector(build_connector())
    login(make_user())

    response = client.get('/api/integrations/coupa/authorize')
    assert response.status_code == 503
    assert response.get_json()['code'] == 'NOT_CONFIGURED'

    assert client.get('/api/integrations/ebay/authorize').status_code == 404


def test_integrations_require_login(client):
    assert client.get('/api/integrations').status_code == 401
