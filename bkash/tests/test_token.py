import threading
import time
from unittest.mock import MagicMock

import requests
from django.test import SimpleTestCase

from bkash.exceptions import AuthenticationError
from bkash.token import GRANT_PATH, REFRESH_PATH, TokenManager


def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TokenManagerTests(SimpleTestCase):
    def setUp(self):
        self.session = MagicMock()
        self.clock = FakeClock()
        self.manager = TokenManager(
            base_url="https://bkash.example.com/v1.2.0-beta/",
            app_key="key",
            app_secret="secret",
            username="merchant",
            password="pw",
            session=self.session,
            clock=self.clock,
        )

    def test_grant_sends_credentials_and_caches_token(self):
        self.session.post.return_value = _response(
            {"statusCode": "0000", "id_token": "tok-1", "refresh_token": "ref-1", "expires_in": 3600}
        )

        self.assertEqual(self.manager.get_valid_token(), "tok-1")
        self.assertEqual(self.manager.get_valid_token(), "tok-1")

        self.session.post.assert_called_once()
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://bkash.example.com/v1.2.0-beta" + GRANT_PATH)
        self.assertEqual(kwargs["json"], {"app_key": "key", "app_secret": "secret"})
        self.assertEqual(kwargs["headers"]["username"], "merchant")
        self.assertEqual(kwargs["headers"]["password"], "pw")

    def test_invalidate_forces_new_grant(self):
        self.session.post.side_effect = [
            _response({"statusCode": "0000", "id_token": "tok-1", "expires_in": 3600}),
            _response({"statusCode": "0000", "id_token": "tok-2", "expires_in": 3600}),
        ]
        self.manager.get_valid_token()

        self.manager.invalidate()

        self.assertEqual(self.manager.get_valid_token(), "tok-2")
        self.assertTrue(self.session.post.call_args[0][0].endswith(GRANT_PATH))

    def test_token_near_expiry_is_refreshed(self):
        self.session.post.side_effect = [
            _response({"statusCode": "0000", "id_token": "tok-1", "refresh_token": "ref-1", "expires_in": 3600}),
            _response({"statusCode": "0000", "id_token": "tok-2", "refresh_token": "ref-2", "expires_in": 3600}),
        ]
        self.manager.get_valid_token()

        # inside the 60 second buffer
        self.clock.now += 3600 - 30
        self.assertEqual(self.manager.get_valid_token(), "tok-2")

        args, kwargs = self.session.post.call_args
        self.assertTrue(args[0].endswith(REFRESH_PATH))
        self.assertEqual(kwargs["json"]["refresh_token"], "ref-1")

    def test_refresh_failure_falls_back_to_grant(self):
        self.session.post.side_effect = [
            _response({"statusCode": "0000", "id_token": "tok-1", "refresh_token": "ref-1", "expires_in": 3600}),
            requests.ConnectionError("reset"),
            _response({"statusCode": "0000", "id_token": "tok-3", "refresh_token": "ref-3", "expires_in": 3600}),
        ]
        self.manager.get_valid_token()
        self.clock.now += 4000

        self.assertEqual(self.manager.get_valid_token(), "tok-3")
        self.assertTrue(self.session.post.call_args[0][0].endswith(GRANT_PATH))

    def test_grant_business_error_raises_authentication_error(self):
        self.session.post.return_value = _response({"statusCode": "2001", "statusMessage": "Invalid App Key"})

        with self.assertRaises(AuthenticationError):
            self.manager.get_valid_token()
        self.assertIsNone(self.manager.token)

    def test_grant_transport_error_raises_authentication_error(self):
        self.session.post.side_effect = requests.Timeout("slow")

        with self.assertRaises(AuthenticationError):
            self.manager.grant_token()

    def test_missing_expires_in_defaults_to_an_hour(self):
        self.session.post.return_value = _response({"statusCode": "0000", "id_token": "tok-1"})
        self.manager.get_valid_token()

        self.assertEqual(self.manager.token.expires_at, 1000.0 + 3600)

    def test_non_numeric_expires_in_falls_back_to_default(self):
        self.session.post.return_value = _response({"statusCode": "0000", "id_token": "tok-1", "expires_in": "soon"})

        self.assertEqual(self.manager.get_valid_token(), "tok-1")
        self.assertEqual(self.manager.token.expires_at, 1000.0 + 3600)

    def test_concurrent_callers_share_one_grant(self):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_post(url, **kwargs):
            calls.append(url)
            started.set()
            release.wait(5)
            return _response({"statusCode": "0000", "id_token": "shared", "refresh_token": "r", "expires_in": 3600})

        self.session.post.side_effect = slow_post
        results = []

        def worker():
            results.append(self.manager.get_valid_token())

        threads = [threading.Thread(target=worker) for _ in range(5)]
        threads[0].start()
        started.wait(5)
        for t in threads[1:]:
            t.start()
        # give the followers time to join the in-flight request
        time.sleep(0.1)
        release.set()
        for t in threads:
            t.join(5)

        self.assertEqual(results, ["shared"] * 5)
        self.assertEqual(len(calls), 1)

    def test_failed_grant_propagates_to_waiters(self):
        started = threading.Event()
        release = threading.Event()

        def failing_post(url, **kwargs):
            started.set()
            release.wait(5)
            raise requests.ConnectionError("down")

        self.session.post.side_effect = failing_post
        errors = []

        def worker():
            try:
                self.manager.get_valid_token()
            except AuthenticationError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(3)]
        threads[0].start()
        started.wait(5)
        for t in threads[1:]:
            t.start()
        time.sleep(0.1)
        release.set()
        for t in threads:
            t.join(5)

        self.assertEqual(len(errors), 3)
        self.assertEqual(self.session.post.call_count, 1)
