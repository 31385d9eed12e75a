"""
Tests for the shared login session.
"""

from datetime import datetime, timedelta, timezone
import unittest

from keyhold.core.session import Session, SessionType
from keyhold.envelope import Envelope, MasterKey, UserBody
from keyhold.errors import EnvelopeValidationError, NotLoggedInError


def make_user(master=MasterKey(alg="triplesec-v3", value="bWFzdGVy")):
    return Envelope(
        id="u1",
        version=1,
        body=UserBody(username="ada", name="Ada", email="ada@example.com", master=master),
    )


class TestSession(unittest.TestCase):

    def test_new_session_is_inactive(self):
        session = Session()
        self.assertFalse(session.is_active)
        with self.assertRaises(NotLoggedInError):
            session.token
        self.assertFalse(session.snapshot().active)

    def test_login_and_logout(self):
        session = Session()
        session.login("tok", user=make_user())

        self.assertTrue(session.is_active)
        self.assertEqual(session.token, "tok")
        self.assertEqual(session.session_type, SessionType.USER)
        snapshot = session.snapshot().to_dict()
        self.assertEqual(snapshot["username"], "ada")
        self.assertEqual(snapshot["type"], "user")

        session.logout()
        with self.assertRaises(NotLoggedInError):
            session.user

    def test_empty_token_rejected(self):
        with self.assertRaises(ValueError):
            Session().login("")

    def test_invalid_user_rejected_at_login(self):
        session = Session()
        with self.assertRaises(EnvelopeValidationError):
            session.login("tok", user=make_user(master=None))
        self.assertFalse(session.is_active)

    def test_expired_session_logs_out(self):
        session = Session()
        session.login("tok", expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))

        self.assertFalse(session.is_active)
        with self.assertRaises(NotLoggedInError):
            session.token

    def test_cipher_required_for_credentials(self):
        session = Session()
        session.login("tok")
        with self.assertRaises(NotLoggedInError):
            session.cipher

    def test_update_user_requires_session(self):
        with self.assertRaises(NotLoggedInError):
            Session().update_user(make_user())


if __name__ == "__main__":
    unittest.main()
