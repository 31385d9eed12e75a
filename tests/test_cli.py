"""
Tests for the CLI front end - argument handling and error-kind exit codes.
"""

import unittest
from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from keyhold.daemon.client import DaemonRequestError
from keyhold.ui import cli


class TestCli(unittest.TestCase):

    def setUp(self):
        self.runner = CliRunner()
        self.client = MagicMock()
        patcher = patch.object(cli, "_client", return_value=self.client)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_profile_update_requires_a_field(self):
        result = self.runner.invoke(cli.app, ["profile", "update"])
        self.assertEqual(result.exit_code, 1)
        self.client.call.assert_not_called()

    def test_profile_update_sends_both_fields(self):
        self.client.call.return_value = {"changed": ["email"], "email_changed": True}

        result = self.runner.invoke(cli.app, ["profile", "update", "--email", "new@example.com"])

        self.assertEqual(result.exit_code, 0, result.output)
        self.client.call.assert_called_once_with("profile.update", name=None, email="new@example.com")
        self.assertIn("re-verify", result.output)

    def test_invites_list_repeats_state(self):
        self.client.call.return_value = []

        result = self.runner.invoke(
            cli.app, ["invites", "list", "org1", "--state", "pending", "--state", "accepted"]
        )

        self.assertEqual(result.exit_code, 0, result.output)
        self.client.call.assert_called_once_with(
            "invites.list", org_id="org1", states=["pending", "accepted"]
        )

    def test_error_kinds_map_to_exit_codes(self):
        cases = [
            ("precondition", 6),
            ("aggregate", 7),
            ("refresh", 8),
            ("transport", 3),
            ("bogus", 1),
        ]
        for kind, code in cases:
            with self.subTest(kind=kind):
                self.client.call.side_effect = DaemonRequestError(kind, "boom")
                result = self.runner.invoke(cli.app, ["credentials", "get", "/a/b/c/*/*/*"])
                self.assertEqual(result.exit_code, code)

    def test_credentials_are_masked_by_default(self):
        self.client.call.return_value = [
            {"name": "DB_PASSWORD", "pathexp": "/a/b/c/*/*/*", "unset": False, "value": "hunter2"},
        ]

        result = self.runner.invoke(cli.app, ["credentials", "get", "/a/b/c/*/*/*"])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertNotIn("hunter2", result.output)


if __name__ == "__main__":
    unittest.main()
