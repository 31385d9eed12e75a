"""
Tests for the envelope codec - decode, validate, encode and sealing.
"""

from datetime import datetime, timezone
import json
import unittest

from keyhold.core.crypto import AesGcmCipher
from keyhold.envelope import (
    CredentialBody,
    CredentialValue,
    EntityType,
    Envelope,
    InviteState,
    MasterKey,
    OrgInviteBody,
    UserBody,
    decode,
    encode,
    load,
    open_credential,
    seal_credential,
    validate,
    validate_user,
)
from keyhold.errors import (
    EnvelopeValidationError,
    InviteLifecycleError,
    MalformedEnvelopeError,
    UnsupportedEntityError,
    UnsupportedVersionError,
    ValidationReason,
)


def user_data(master=None, version=1, **overrides):
    body = {
        "username": "ada",
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "state": "active",
        "master": {"alg": "triplesec-v3", "value": "c2VjcmV0LW1hc3Rlcg=="} if master is None else master,
    }
    body.update(overrides)
    return {"id": "u1", "version": version, "body": body}


class TestDecode(unittest.TestCase):
    """Decoding raw envelopes into typed models."""

    def test_decode_user_from_bytes(self):
        raw = json.dumps(user_data()).encode("utf-8")
        envelope = decode(raw, 1, EntityType.USER)

        self.assertEqual(envelope.id, "u1")
        self.assertEqual(envelope.version, 1)
        self.assertIsInstance(envelope.body, UserBody)
        self.assertEqual(envelope.entity_type, EntityType.USER)
        self.assertEqual(envelope.body.master.alg, "triplesec-v3")

    def test_decode_accepts_entity_name_string(self):
        envelope = decode(user_data(), 1, "user")
        self.assertEqual(envelope.body.username, "ada")

    def test_encode_then_decode_preserves_fields(self):
        original = decode(user_data(), 1, EntityType.USER)
        again = decode(encode(original), 1, EntityType.USER)
        self.assertEqual(again, original)

    def test_unknown_declared_version_rejected_before_body(self):
        # The body is garbage; a version error proves it was never looked at
        data = {"id": "u1", "version": 2, "body": "not a body"}
        with self.assertRaises(UnsupportedVersionError) as ctx:
            decode(data, 2, EntityType.USER)
        self.assertEqual(ctx.exception.version, 2)

    def test_boolean_version_rejected(self):
        with self.assertRaises(UnsupportedVersionError):
            decode(user_data(), True, EntityType.USER)

    def test_embedded_unknown_version_rejected(self):
        with self.assertRaises(UnsupportedVersionError):
            decode(user_data(version=7), 1, EntityType.USER)

    def test_embedded_version_must_be_an_integer(self):
        for bad in (True, 1.0, "1"):
            with self.subTest(version=bad):
                with self.assertRaises(UnsupportedVersionError):
                    decode(user_data(version=bad), 1, EntityType.USER)

    def test_non_text_raw_input_is_malformed(self):
        for raw in ([user_data()], 42, None):
            with self.subTest(raw=raw):
                with self.assertRaises(MalformedEnvelopeError):
                    decode(raw, 1, EntityType.USER)

    def test_unknown_entity_rejected(self):
        with self.assertRaises(UnsupportedEntityError):
            decode(user_data(), 1, "team")

    def test_invalid_json(self):
        with self.assertRaises(MalformedEnvelopeError):
            decode(b"{not json", 1, EntityType.USER)

    def test_non_object_json(self):
        with self.assertRaises(MalformedEnvelopeError):
            decode(b"[1, 2]", 1, EntityType.USER)

    def test_schema_errors_do_not_echo_input(self):
        data = user_data(master={"alg": "triplesec-v3", "value": 12345})
        del data["body"]["email"]
        with self.assertRaises(MalformedEnvelopeError) as ctx:
            decode(data, 1, EntityType.USER)

        self.assertTrue(ctx.exception.details)
        for detail in ctx.exception.details:
            self.assertNotIn("input", detail)

    def test_missing_body_decodes_as_none(self):
        envelope = decode({"id": None, "version": 1}, 1, EntityType.USER)
        self.assertIsNone(envelope.body)
        self.assertIsNone(envelope.entity_type)


class TestValidateUser(unittest.TestCase):
    """The master-key rules applied to user records."""

    def _user(self, master):
        return Envelope(
            id="u1",
            version=1,
            body=UserBody(username="ada", name="Ada", email="ada@example.com", master=master),
        )

    def test_valid_user_passes(self):
        envelope = self._user(MasterKey(alg="triplesec-v3", value="abc"))
        self.assertIs(validate_user(envelope), envelope)

    def test_missing_master(self):
        with self.assertRaises(EnvelopeValidationError) as ctx:
            validate_user(self._user(None))
        self.assertEqual(ctx.exception.reason, ValidationReason.MISSING_MASTER)

    def test_unknown_algorithm(self):
        with self.assertRaises(EnvelopeValidationError) as ctx:
            validate_user(self._user(MasterKey(alg="scrypt", value="abc")))
        self.assertEqual(ctx.exception.reason, ValidationReason.UNKNOWN_ALGORITHM)

    def test_empty_master_value(self):
        with self.assertRaises(EnvelopeValidationError) as ctx:
            validate_user(self._user(MasterKey(alg="triplesec-v3", value="")))
        self.assertEqual(ctx.exception.reason, ValidationReason.EMPTY_MASTER_KEY)

    def test_wrong_version(self):
        envelope = Envelope(version=2, body=UserBody(username="a", name="A", email="a@x"))
        with self.assertRaises(EnvelopeValidationError) as ctx:
            validate_user(envelope)
        self.assertEqual(ctx.exception.reason, ValidationReason.VERSION_MISMATCH)

    def test_missing_body(self):
        with self.assertRaises(EnvelopeValidationError) as ctx:
            validate_user(Envelope(version=1))
        self.assertEqual(ctx.exception.reason, ValidationReason.MISSING_BODY)

    def test_failures_do_not_leak_key_material(self):
        secret = "super-secret-master"
        with self.assertRaises(EnvelopeValidationError) as ctx:
            validate_user(self._user(MasterKey(alg="unknown", value=secret)))
        self.assertNotIn(secret, str(ctx.exception))
        self.assertNotIn(secret, repr(self._user(MasterKey(alg="triplesec-v3", value=secret))))

    def test_load_logs_rejections(self):
        data = user_data(master={"alg": "md5", "value": "abc"})
        with self.assertLogs("keyhold.envelope.codec", level="WARNING") as logs:
            with self.assertRaises(EnvelopeValidationError):
                load(data, 1, EntityType.USER)
        self.assertIn("unknown_algorithm", logs.output[0])


class TestInvites(unittest.TestCase):
    """Invite lifecycle transitions and validation."""

    def setUp(self):
        self.invite = OrgInviteBody(
            org_id="org1",
            inviter_id="u1",
            email="bob@example.com",
            created=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )

    def test_accept_then_approve(self):
        self.assertEqual(self.invite.state, InviteState.PENDING)

        accepted = self.invite.accept("u2")
        self.assertEqual(accepted.state, InviteState.ACCEPTED)
        self.assertEqual(accepted.invitee_id, "u2")
        # Original is unchanged
        self.assertIsNone(self.invite.accepted)

        approved = accepted.approve("u1")
        self.assertEqual(approved.state, InviteState.APPROVED)
        validate(Envelope(id="i1", version=1, body=approved))

    def test_approve_before_accept_raises(self):
        with self.assertRaises(InviteLifecycleError):
            self.invite.approve("u1")

    def test_double_accept_raises(self):
        with self.assertRaises(InviteLifecycleError):
            self.invite.accept("u2").accept("u3")

    def test_validate_rejects_approval_without_acceptance(self):
        body = self.invite.model_copy(
            update={"approved": datetime(2026, 1, 2, tzinfo=timezone.utc), "approver_id": "u1"}
        )
        with self.assertRaises(EnvelopeValidationError) as ctx:
            validate(Envelope(id="i1", version=1, body=body))
        self.assertEqual(ctx.exception.reason, ValidationReason.INVALID_LIFECYCLE)


class TestSealing(unittest.TestCase):
    """Sealing credentials with the AES-GCM cipher."""

    def setUp(self):
        self.cipher = AesGcmCipher(b"k" * 32)

    def test_seal_and_open(self):
        body = CredentialBody(
            name="DB_PASSWORD",
            pathexp="/acme/api/dev/*/*/*",
            value=CredentialValue(value="hunter2"),
        )
        sealed = seal_credential(body, self.cipher)

        self.assertNotIn("hunter2", sealed.model_dump_json())
        opened = open_credential(sealed, self.cipher)
        self.assertEqual(opened, body)

    def test_unset_credential_round_trips_as_none(self):
        body = CredentialBody(name="OLD", pathexp="/acme/api/dev/*/*/*")
        opened = open_credential(seal_credential(body, self.cipher), self.cipher)
        self.assertTrue(opened.is_unset)

    def test_wrong_key_is_malformed(self):
        body = CredentialBody(name="A", pathexp="/a/b/c/*/*/*", value=CredentialValue(value="x"))
        sealed = seal_credential(body, self.cipher)
        with self.assertRaises(MalformedEnvelopeError):
            open_credential(sealed, AesGcmCipher(b"z" * 32))

    def test_bad_base64_is_malformed(self):
        body = CredentialBody(name="A", pathexp="/a/b/c/*/*/*", value=CredentialValue(value="x"))
        sealed = seal_credential(body, self.cipher)
        broken = sealed.model_copy(
            update={"value": sealed.value.model_copy(update={"nonce": "***"})}
        )
        with self.assertRaises(MalformedEnvelopeError):
            open_credential(broken, self.cipher)

    def test_short_key_material_rejected(self):
        with self.assertRaises(ValueError):
            AesGcmCipher(b"short")


if __name__ == "__main__":
    unittest.main()
