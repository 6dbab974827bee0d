import unittest
from unittest.mock import patch

import requests

from auth import Identity, IdentityProvider
from errors import BackendError, UnauthorizedError

OWNER_INFO = {'id': 'google-123', 'email': 'owner@example.com', 'name': 'Blog Owner'}


class IdentityProviderTestCase(unittest.TestCase):
    """Tests for the single-user sign-in gate and its change subscription."""

    def setUp(self):
        self.provider = IdentityProvider('client-id', 'client-secret', 'owner@example.com')

    def test_subscribe_delivers_current_identity_once(self):
        seen = []
        self.provider.subscribe(seen.append)
        self.assertEqual(seen, [None])

        identity = self.provider.accept(OWNER_INFO)
        self.assertEqual(seen, [None, identity])

    def test_late_subscriber_gets_signed_in_identity(self):
        identity = self.provider.accept(OWNER_INFO)
        seen = []
        self.provider.subscribe(seen.append)
        self.assertEqual(seen, [identity])

    def test_no_notification_without_change(self):
        seen = []
        self.provider.subscribe(seen.append)
        self.provider.accept(OWNER_INFO)
        self.provider.accept(OWNER_INFO)
        self.provider.sign_out()
        self.provider.sign_out()
        self.assertEqual(len(seen), 3)
        self.assertIsNone(seen[-1])

    def test_unsubscribe_stops_delivery(self):
        seen = []
        unsubscribe = self.provider.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        self.provider.accept(OWNER_INFO)
        self.assertEqual(seen, [None])

    def test_failing_listener_does_not_block_others(self):
        def broken(identity):
            if identity is not None:
                raise RuntimeError('listener bug')

        seen = []
        self.provider.subscribe(broken)
        self.provider.subscribe(seen.append)
        identity = self.provider.accept(OWNER_INFO)
        self.assertEqual(seen, [None, identity])

    def test_listener_failing_on_first_delivery_stays_subscribed(self):
        calls = []

        def flaky(identity):
            calls.append(identity)
            if len(calls) == 1:
                raise RuntimeError('not ready yet')

        seen = []
        self.provider.subscribe(seen.append)
        unsubscribe = self.provider.subscribe(flaky)
        self.assertTrue(callable(unsubscribe))

        identity = self.provider.accept(OWNER_INFO)
        self.assertEqual(calls, [None, identity])
        self.assertEqual(seen, [None, identity])

    def test_other_email_rejected_and_signed_out(self):
        self.provider.accept(OWNER_INFO)
        with self.assertRaises(UnauthorizedError) as ctx:
            self.provider.accept({'id': 'google-999', 'email': 'stranger@example.com'})
        self.assertEqual(ctx.exception.code, 'unauthorized_identity')
        self.assertIsNone(self.provider.current)

    def test_email_match_ignores_case(self):
        identity = self.provider.accept({'id': 'google-123', 'email': 'Owner@Example.com'})
        self.assertEqual(self.provider.current, identity)
        self.assertTrue(self.provider.is_authorized(Identity('x', ' OWNER@example.com ')))
        self.assertFalse(self.provider.is_authorized(None))

    def test_display_name_defaults_to_email_local_part(self):
        identity = self.provider.accept({'id': 'google-123', 'email': 'owner@example.com'})
        self.assertEqual(identity.display_name, 'owner')
        self.assertEqual(Identity.from_dict(identity.to_dict()), identity)

    @patch('auth.OAuth2Session')
    def test_sign_in_interactive(self, mock_session_cls):
        google = mock_session_cls.return_value
        google.get.return_value.json.return_value = OWNER_INFO

        identity = self.provider.sign_in_interactive('https://blog.test/google_callback?code=abc', 'state-1',
                                                     'https://blog.test/google_callback')

        self.assertEqual(identity.uid, 'google-123')
        self.assertEqual(self.provider.current, identity)
        google.fetch_token.assert_called_once()
        self.assertEqual(google.fetch_token.call_args.kwargs['client_secret'], 'client-secret')

    @patch('auth.OAuth2Session')
    def test_sign_in_interactive_network_failure(self, mock_session_cls):
        mock_session_cls.return_value.fetch_token.side_effect = requests.ConnectionError('down')
        with self.assertRaises(BackendError):
            self.provider.sign_in_interactive('https://blog.test/google_callback?code=abc', 'state-1')
        self.assertIsNone(self.provider.current)

    @patch('auth.OAuth2Session')
    def test_authorization_url(self, mock_session_cls):
        mock_session_cls.return_value.authorization_url.return_value = ('https://accounts.google.com/o/oauth2/auth?x', 'st')
        url, state = self.provider.authorization_url('https://blog.test/google_callback')
        self.assertEqual(state, 'st')
        self.assertTrue(url.startswith('https://accounts.google.com/'))


if __name__ == '__main__':
    unittest.main()
