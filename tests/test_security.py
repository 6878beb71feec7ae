import json

import mailer
from audit_log import AuditLogger, AuditEvent
from conftest import FakeResponse, FakeSession
from encryption import TokenEncryption


def test_tokens_are_bound_to_their_user():
    cipher = TokenEncryption('unit-test-secret')

    stored = cipher.encrypt(7, 'access-token')

    assert stored != 'access-token'
    assert cipher.decrypt(7, stored) == 'access-token'
    assert cipher.decrypt(8, stored) is None
    assert TokenEncryption('other-secret').decrypt(7, stored) is None
    assert cipher.encrypt(7, None) is None


def test_audit_log_never_records_credentials(tmp_path):
    logger = AuditLogger(log_path=tmp_path / 'audit.log')

    logger.log_event(
        AuditEvent.INTEGRATION_CONNECTED,
        user_id=3,
        details={'provider': 'oracle', 'access_token': 'at-123', 'state': 'abc'},
    )

    line = (tmp_path / 'audit.log').read_text().strip()
    entry = json.loads(line)
    assert entry['event'] == 'integration.connected'
    assert entry['details']['provider'] == 'oracle'
    assert entry['details']['_skipped_access_token'] == 'str'
    assert 'at-123' not in line
    assert 'abc' not in json.dumps(entry['details'])


def test_recent_events_filtering(tmp_path):
    logger = AuditLogger(log_path=tmp_path / 'audit.log')
    logger.log_event(AuditEvent.CREDITS_SPENT, user_id=1, details={'amount': 1})
    logger.log_event(AuditEvent.CREDITS_ADDED, user_id=2, details={'amount': 5})
    logger.log_event(AuditEvent.CREDITS_SPENT, user_id=2, details={'amount': 1})

    spent = logger.get_recent_events(event_type=AuditEvent.CREDITS_SPENT)
    assert [e['user_id'] for e in spent] == [2, 1]
    assert len(logger.get_recent_events(user_id=2)) == 2


def test_mailer_without_key_does_not_send(monkeypatch):
    monkeypatch.setattr(mailer, 'SENDGRID_API_KEY', '')
    session = FakeSession()

    assert mailer.send_email('a@example.com', 'Hi', 'Body', session=session) is False
    assert session.calls == []


def test_mailer_posts_to_sendgrid(monkeypatch):
    monkeypatch.setattr(mailer, 'SENDGRID_API_KEY', 'SG.test')
    session = FakeSession(FakeResponse(202, text=''))

    assert mailer.send_email('a@example.com', 'Verify', 'Click the link', session=session) is True

    url, kwargs = session.calls[0]
    assert url == mailer.SENDGRID_URL
    assert kwargs['json']['personalizations'][0]['to'] == [{'email': 'a@example.com'}]
    assert kwargs['headers']['Authorization'] == 'Bearer SG.test'
