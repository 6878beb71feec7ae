import time

import pytest

from errors import RequestFailed
from retry import with_retry, with_timeout


def test_retries_exactly_max_attempts():
    calls = []
    sleeps = []

    def always_fails():
        calls.append(1)
        raise ConnectionError('down')

    with pytest.raises(ConnectionError):
        with_retry(always_fails, max_attempts=3, delay=2.0, sleep=sleeps.append)

    assert len(calls) == 3
    assert sleeps == [2.0, 2.0]


def test_returns_first_success():
    attempts = iter([RequestFailed('502', 502), 'ok'])

    def flaky():
        value = next(attempts)
        if isinstance(value, Exception):
            raise value
        return value

    assert with_retry(flaky, sleep=lambda s: None) == 'ok'


def test_should_retry_false_raises_immediately():
    calls = []

    def client_error():
        calls.append(1)
        raise RequestFailed('bad request', 400)

    with pytest.raises(RequestFailed):
        with_retry(
            client_error,
            retry_on=(RequestFailed,),
            should_retry=lambda e: e.is_transient,
            sleep=lambda s: None,
        )

    assert len(calls) == 1


def test_unlisted_exceptions_are_not_retried():
    calls = []

    def broken():
        calls.append(1)
        raise KeyError('x')

    with pytest.raises(KeyError):
        with_retry(broken, retry_on=(RequestFailed,), sleep=lambda s: None)

    assert len(calls) == 1


def test_with_timeout():
    assert with_timeout(lambda: 42, 1) == 42

    with pytest.raises(TimeoutError):
        with_timeout(lambda: time.sleep(0.5), 0.05, label='slow')
