from unittest.mock import MagicMock

import pytest
from bson import ObjectId

from carbon_registry import accounts
from carbon_registry.accounts import MongoAccountDirectory, normalize_role
from carbon_registry.errors import PreconditionFailed
from carbon_registry.utils import (
    canonical_json,
    ed25519_keypair_pem,
    ed25519_sign_hex,
    hex0x,
    parse_iso,
    to_public,
    verify_ed25519,
)


@pytest.mark.parametrize("raw, role", [
    ("Verifier", "VERIFIER"),
    ("inspector", "INSPECTOR"),
    ("Register", "OWNER"),
    ("project-owner", "OWNER"),
    ("Administrator", "ADMIN"),
])
def test_normalize_role(raw, role):
    assert normalize_role(raw) == role


def test_unknown_role():
    with pytest.raises(ValueError):
        normalize_role("auditor")


def test_capabilities():
    caps = accounts.ROLE_CAPABILITIES
    assert accounts.APPROVE in caps["VERIFIER"] and accounts.APPROVE not in caps["OWNER"]
    assert caps["INSPECTOR"] == {accounts.EVIDENCE}
    assert accounts.RETIRE in caps["OWNER"]


class TestDirectory:
    def test_create_account_validates_key(self):
        directory = MongoAccountDirectory(MagicMock())
        with pytest.raises(PreconditionFailed):
            directory.create_account("Lab", "Verifier", "not a pem")
        with pytest.raises(PreconditionFailed):
            directory.create_account("Lab", "auditor", ed25519_keypair_pem()[1])

    def test_create_and_check_capability(self):
        db = MagicMock()
        oid = ObjectId()
        db.accounts.insert_one.return_value = MagicMock(inserted_id=oid)
        directory = MongoAccountDirectory(db)
        _, pem = ed25519_keypair_pem()

        acct = directory.create_account("Lab", "verifier", pem)
        assert acct == {"id": str(oid), "name": "Lab", "role": "VERIFIER", "public_key_pem": pem}

        db.accounts.find_one.return_value = {"_id": oid, "name": "Lab", "role": "VERIFIER", "public_key_pem": pem}
        assert directory.has_capability(str(oid), accounts.APPROVE)
        assert not directory.has_capability(str(oid), accounts.RETIRE)
        assert directory.public_key_pem(str(oid)) == pem

    def test_malformed_caller_id_has_no_capabilities(self):
        db = MagicMock()
        directory = MongoAccountDirectory(db)
        assert not directory.has_capability("owner-1", accounts.SUBMIT)
        assert directory.public_key_pem("owner-1") is None
        db.accounts.find_one.assert_not_called()


class TestSignatures:
    def test_sign_and_verify(self):
        sk, pem = ed25519_keypair_pem()
        payload = {"b": 2, "a": [1, "x"]}
        sig = ed25519_sign_hex(sk, payload)
        assert verify_ed25519(pem, canonical_json(payload).encode("utf-8"), sig)
        assert not verify_ed25519(pem, canonical_json({"b": 3, "a": [1, "x"]}).encode("utf-8"), sig)
        assert not verify_ed25519(pem, b"x", "zz-not-hex")

    def test_canonical_json_is_compact_and_sorted(self):
        assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'


def test_hex_helpers():
    assert hex0x(b"\xab\xcd") == "0xabcd"
    assert hex0x("ABCD") == "0xabcd"
    assert hex0x(None) is None


def test_to_public_handles_nested_values():
    when = parse_iso("2025-01-01T00:00:00Z")
    oid = ObjectId()
    out = to_public({"_id": oid, "when": when, "ids": (oid,), "nested": {"n": 1}})
    assert out == {"when": "2025-01-01T00:00:00Z", "ids": [str(oid)], "nested": {"n": 1}}
