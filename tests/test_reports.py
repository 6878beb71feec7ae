import pytest

from billing.ledger import get_balance, get_transactions
from conftest import FakeResponse, FakeSession, SAMPLE_REPORT
from errors import NotConfigured, RequestFailed
from sourcing.generator import ReportGenerator, parse_report, build_prompt


REPORT_BODY = {
    'title': 'Steel bottles Q3',
    'category': 'Housewares',
    'formData': {
        'productName': 'Insulated steel water bottle',
        'category': 'Housewares',
        'targetRegion': 'Asia',
        'budget': '$5,000',
        'quantity': '2000',
    },
}


def test_report_spends_one_credit_and_completes(client, make_user, login):
    user_id = make_user()
    login(user_id)

    response = client.post('/api/reports', json=REPORT_BODY)

    assert response.status_code == 201
    report = response.get_json()
    assert report['status'] == 'completed'
    assert report['reportData'] == SAMPLE_REPORT
    assert report['completedAt'] is not None
    assert get_balance(user_id) == 1

    spend = get_transactions(user_id)[0]
    assert spend.amount == -1
    assert spend.description == 'Smart Finder Report'


def test_report_without_credits_creates_nothing(client, make_user, login):
    user_id = make_user()
    login(user_id)
    client.post('/api/reports', json=REPORT_BODY)
    client.post('/api/reports', json=REPORT_BODY)

    response = client.post('/api/reports', json=REPORT_BODY)

    assert response.status_code == 402
    assert response.get_json()['code'] == 'INSUFFICIENT_CREDITS'
    assert response.get_json()['required'] == 1
    assert len(client.get('/api/reports').get_json()) == 2
    assert get_balance(user_id) == 0


def test_report_validation(client, make_user, login):
    login(make_user())

    assert client.post('/api/reports', json={'title': 'x', 'category': 'y'}).status_code == 400
    body = dict(REPORT_BODY, formData={'quantity': '10'})
    assert client.post('/api/reports', json=body).status_code == 400
    assert client.post('/api/reports', json=['not', 'an', 'object']).status_code == 400


def test_unverified_user_cannot_generate(client, make_user, login):
    user_id = make_user(verified=False)
    login(user_id)

    response = client.post('/api/reports', json=REPORT_BODY)

    assert response.status_code == 403
    assert get_balance(user_id) == 2


def test_failed_report_can_be_retried_for_free(client, make_user, login, pipeline):
    user_id = make_user()
    login(user_id)

    def broken(form):
        raise RequestFailed('Report provider returned HTTP 503', 503)

    pipeline.generator = broken
    report = client.post('/api/reports', json=REPORT_BODY).get_json()
    assert report['status'] == 'failed'
    assert 'HTTP 503' in report['errorMessage']
    assert report['reportData'] is None

    pipeline.generator = lambda form: dict(SAMPLE_REPORT)
    retried = client.post(f"/api/reports/{report['id']}/retry")

    assert retried.status_code == 200
    assert retried.get_json()['status'] == 'completed'
    assert retried.get_json()['errorMessage'] is None
    assert get_balance(user_id) == 1

    again = client.post(f"/api/reports/{report['id']}/retry")
    assert again.status_code == 409


def test_generation_timeout_marks_report_failed(client, make_user, login, pipeline):
    import time

    login(make_user())
    pipeline.timeout = 0.05
    pipeline.generator = lambda form: time.sleep(0.5) or dict(SAMPLE_REPORT)

    report = client.post('/api/reports', json=REPORT_BODY).get_json()

    assert report['status'] == 'failed'
    assert 'timed out' in report['errorMessage']


def test_run_skips_reports_not_generating(client, make_user, login, pipeline):
    login(make_user())
    report = client.post('/api/reports', json=REPORT_BODY).get_json()

    assert pipeline.run(report['id']) is None
    assert pipeline.run(99999) is None


def test_reports_are_private(client, make_user, login):
    owner = make_user()
    stranger = make_user()
    login(owner)
    report_id = client.post('/api/reports', json=REPORT_BODY).get_json()['id']

    login(stranger)
    assert client.get(f'/api/reports/{report_id}').status_code == 404
    assert client.delete(f'/api/reports/{report_id}').status_code == 404
    assert client.get('/api/reports').get_json() == []

    login(owner)
    assert client.get(f'/api/reports/{report_id}').get_json()['title'] == 'Steel bottles Q3'
    assert client.delete(f'/api/reports/{report_id}').status_code == 200
    assert client.get(f'/api/reports/{report_id}').status_code == 404


# =============================================================================
# GENERATOR
# =============================================================================

def test_parse_report_tolerates_fences():
    content = '```json\n{"executiveSummary": "ok", "recommendations": ["a"]}\n```'
    assert parse_report(content)['executiveSummary'] == 'ok'


def test_parse_report_requires_sections():
    with pytest.raises(ValueError):
        parse_report('{"executiveSummary": "only this"}')
    with pytest.raises(ValueError):
        parse_report('no json here')


def test_prompt_includes_form_fields():
    prompt = build_prompt(REPORT_BODY['formData'])
    assert 'Product: Insulated steel water bottle' in prompt
    assert 'Quantity: 2000' in prompt


def completion(content):
    return FakeResponse(200, {'choices': [{'message': {'content': content}}]})


def test_generator_retries_server_errors():
    session = FakeSession(
        FakeResponse(502, text='bad gateway'),
        completion('{"executiveSummary": "ok", "recommendations": []}'),
    )
    generator = ReportGenerator(api_key='sk-test', session=session, retry_delay=0)

    assert generator(REPORT_BODY['formData'])['executiveSummary'] == 'ok'
    assert len(session.calls) == 2
    assert session.calls[0][1]['headers']['Authorization'] == 'Bearer sk-test'


def test_generator_errors():
    with pytest.raises(NotConfigured):
        ReportGenerator(api_key='', session=FakeSession())({})

    generator = ReportGenerator(api_key='sk-test', session=FakeSession(completion('not json')), retry_delay=0)
    with pytest.raises(RequestFailed):
        generator(REPORT_BODY['formData'])

    generator = ReportGenerator(api_key='sk-test', session=FakeSession(FakeResponse(401, text='no')), retry_delay=0)
    with pytest.raises(RequestFailed):
        generator(REPORT_BODY['formData'])
    assert len(generator.session.calls) == 1
