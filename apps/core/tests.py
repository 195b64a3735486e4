"""
Core Tests
Retry policy, keyed locks and the API error payload
"""

import threading
import time

import pytest
from rest_framework import exceptions as drf_exceptions
from rest_framework.test import APIRequestFactory

from apps.core.exceptions import (
    CaseNotFound,
    ExtractionTimeout,
    SessionExpiredError,
    api_exception_handler,
)
from apps.core.locks import KeyedLocks
from apps.core.retry import backoff_delays, retry_with_backoff


class TestRetryWithBackoff:

    def test_exponential_delays_are_capped(self):
        assert backoff_delays(5, 0.5, 2.0) == [0.5, 1.0, 2.0, 2.0]
        assert backoff_delays(1, 0.5, 2.0) == []

    def test_recovers_after_transient_failures(self):
        calls = []
        delays = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ExtractionTimeout('slow')
            return 'ok'

        result = retry_with_backoff(flaky, attempts=3, base_delay=0.5, retry_on=(ExtractionTimeout,),
                                    sleep=delays.append)

        assert result == 'ok'
        assert delays == [0.5, 1.0]

    def test_gives_up_after_last_attempt(self):
        delays = []

        def always_slow():
            raise ExtractionTimeout('slow')

        with pytest.raises(ExtractionTimeout):
            retry_with_backoff(always_slow, attempts=2, retry_on=(ExtractionTimeout,), sleep=delays.append)
        assert delays == [0.5]

    def test_other_errors_propagate_at_once(self):
        delays = []

        def broken():
            raise KeyError('programming error')

        with pytest.raises(KeyError):
            retry_with_backoff(broken, retry_on=(ExtractionTimeout,), sleep=delays.append)
        assert delays == []

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            retry_with_backoff(lambda: None, attempts=0)


class TestKeyedLocks:

    def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        active = []
        overlaps = []

        def work():
            with locks.hold('CASE-1'):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(1)
                time.sleep(0.001)
                active.pop()

        threads = [threading.Thread(target=work) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []

    def test_lock_is_reentrant(self):
        locks = KeyedLocks()
        with locks.hold('CASE-1'):
            with locks.hold('CASE-1'):
                assert len(locks) == 1
            assert len(locks) == 1

        assert len(locks) == 0

    def test_released_keys_are_forgotten(self):
        locks = KeyedLocks()
        for n in range(500):
            with locks.hold(f'session-{n}'):
                pass

        assert len(locks) == 0

    def test_entry_survives_while_another_thread_waits(self):
        locks = KeyedLocks()
        entered = threading.Event()
        order = []

        def waiter():
            entered.set()
            with locks.hold('CASE-1'):
                order.append('waiter')

        with locks.hold('CASE-1'):
            thread = threading.Thread(target=waiter)
            thread.start()
            entered.wait()
            time.sleep(0.01)
            order.append('holder')
        thread.join()

        assert order == ['holder', 'waiter']
        assert len(locks) == 0

    def test_released_on_error(self):
        locks = KeyedLocks()

        with pytest.raises(KeyError):
            with locks.hold('CASE-1'):
                raise KeyError('boom')

        assert len(locks) == 0


class TestApiExceptionHandler:

    def context(self, **headers):
        return {'request': APIRequestFactory().get('/api/v1/cases/', **headers)}

    def test_domain_error_payload(self):
        response = api_exception_handler(
            SessionExpiredError('session s1 expired'),
            self.context(HTTP_X_REQUEST_ID='req-1'),
        )

        assert response.status_code == 409
        assert response.data['error_code'] == 'SESSION_EXPIRED'
        assert response.data['technical_detail'] == 'session s1 expired'
        assert response.data['request_id'] == 'req-1'
        assert set(response.data) == {'error_code', 'user_message', 'technical_detail', 'timestamp', 'request_id'}

    def test_user_message_override(self):
        exc = CaseNotFound('missing', user_message='No such case.')

        response = api_exception_handler(exc, self.context())

        assert response.status_code == 404
        assert response.data['user_message'] == 'No such case.'

    def test_authentication_failures_are_opaque(self):
        response = api_exception_handler(drf_exceptions.NotAuthenticated('no credentials for CASE-1'), self.context())

        assert response.status_code == 401
        assert response.data['error_code'] == 'AUTHENTICATION_FAILED'
        assert 'CASE-1' not in str(response.data)

    def test_unexpected_errors_are_left_to_django(self):
        assert api_exception_handler(RuntimeError('boom'), self.context()) is None
