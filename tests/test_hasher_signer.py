"""
Tests for hashing, Ed25519 signing and the coordinator key.
"""

import pytest

from matchproof.core import (
    Hasher,
    KeyFormatError,
    KeyManager,
    Signer,
    SigningService,
    canonicalize,
    get_signing_service,
)
from matchproof.core.signer import PKCS8_ED25519_PREFIX
from matchproof.schemas import MatchRecord

from conftest import make_record


# RFC 8032 section 7.1, test 1
RFC_SEED = "9d61b19deffd5a60ba844af492ec2cc44449c5697b326919703bac031cae7f60"
RFC_PUBLIC = "d75a980182b10ab7d54bfed3c964073a0ee172f3daa62325af021a68f707511a"
RFC_SIGNATURE = (
    "e5564300c360ac729086e2cc806e828a84877f1eb8e5d974d873e065224901555"
    "fb8821590a33bacc61e39701cf9b46bd25bf5f0595bbe24655141438e7a100b"
)


class TestHasher:
    """SHA-256 over canonical bytes."""

    def test_known_vectors(self):
        assert Hasher.hash_bytes(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        assert Hasher.hash_bytes(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_hash_value_uses_canonical_bytes(self):
        """Key order does not change the hash."""
        assert Hasher.hash_value({"b": 1, "a": 2}) == Hasher.hash_value({"a": 2, "b": 1})
        assert Hasher.hash_value({"a": 2, "b": 1}) == Hasher.hash_bytes(b'{"a":2,"b":1}')

    def test_hash_match_record(self):
        """A model and its document hash the same."""
        doc = make_record()
        assert Hasher.hash_match_record(doc) == Hasher.hash_match_record(MatchRecord.model_validate(doc))

    def test_any_change_changes_hash(self):
        a = make_record()
        b = make_record(seed=424243)
        assert Hasher.hash_match_record(a) != Hasher.hash_match_record(b)

    def test_is_valid_hash(self):
        assert Hasher.is_valid_hash("a" * 64)
        assert not Hasher.is_valid_hash("A" * 64)
        assert not Hasher.is_valid_hash("a" * 63)
        assert not Hasher.is_valid_hash("g" * 64)
        assert not Hasher.is_valid_hash(None)

    def test_constant_time_compare_ignores_case(self):
        h = Hasher.hash_bytes(b"x")
        assert Hasher.constant_time_compare(h, h.upper())
        assert not Hasher.constant_time_compare(h, Hasher.hash_bytes(b"y"))


class TestKeyManager:
    """Key generation and import/export."""

    def test_generate_keypair_formats(self):
        keys = KeyManager.generate_keypair()
        assert len(keys.public_key) == 64
        assert len(keys.private_key) == 96
        assert bytes.fromhex(keys.private_key).startswith(PKCS8_ED25519_PREFIX)

    def test_pkcs8_round_trip(self):
        keys = KeyManager.generate_keypair()
        assert KeyManager.public_key_for(keys.private_key) == keys.public_key

    def test_seed_import(self):
        """A raw 32-byte seed is accepted."""
        assert KeyManager.public_key_for(RFC_SEED) == RFC_PUBLIC

    def test_secret_key_import(self):
        """A 64-byte seed||public secret key is accepted when consistent."""
        assert KeyManager.public_key_for(RFC_SEED + RFC_PUBLIC) == RFC_PUBLIC

    def test_inconsistent_secret_key_rejected(self):
        with pytest.raises(KeyFormatError, match="does not match"):
            KeyManager.import_private_key(RFC_SEED + "00" * 32)

    def test_wrong_pkcs8_prefix_rejected(self):
        bad = "ff" * 16 + RFC_SEED
        with pytest.raises(KeyFormatError, match="PKCS#8"):
            KeyManager.import_private_key(bad)

    @pytest.mark.parametrize("value", ["zz" * 32, "ab" * 10, ""])
    def test_malformed_private_keys_rejected(self, value):
        with pytest.raises(KeyFormatError):
            KeyManager.import_private_key(value)

    def test_public_key_length_enforced(self):
        with pytest.raises(KeyFormatError, match="32 bytes"):
            KeyManager.import_public_key("ab" * 31)


class TestSigner:
    """Detached Ed25519 signatures."""

    def test_rfc8032_vector(self):
        """The empty-message vector from RFC 8032."""
        assert Signer.sign_raw(b"", RFC_SEED) == RFC_SIGNATURE
        assert Signer.verify_raw(b"", RFC_SIGNATURE, RFC_PUBLIC)

    def test_sign_and_verify(self, player_keys):
        message = canonicalize({"match": 1})
        record = Signer.sign(message, player_keys.private_key)
        assert record.public_key == player_keys.public_key
        assert record.algorithm == "ed25519"
        assert record.signed_at.endswith("Z")
        assert Signer.verify(message, record)

    def test_tampered_message_fails(self, player_keys):
        record = Signer.sign(b"original", player_keys.private_key)
        assert not Signer.verify(b"tampered", record)

    def test_wrong_key_fails(self, player_keys):
        other = KeyManager.generate_keypair()
        signature = Signer.sign_raw(b"msg", player_keys.private_key)
        assert not Signer.verify_raw(b"msg", signature, other.public_key)

    @pytest.mark.parametrize("signature", ["", "zz", "ab" * 63, "ab" * 65])
    def test_malformed_signature_is_false_not_error(self, player_keys, signature):
        """Verification never raises."""
        assert Signer.verify_raw(b"msg", signature, player_keys.public_key) is False

    def test_malformed_public_key_is_false(self):
        assert Signer.verify_raw(b"msg", RFC_SIGNATURE, "not-hex") is False

    def test_unknown_algorithm_rejected(self, player_keys):
        record = Signer.sign(b"msg", player_keys.private_key)
        other_algo = record.model_copy(update={"algorithm": "rsa"})
        assert not Signer.verify(b"msg", other_algo)

    def test_every_player_signs_unsigned_bytes(self, player_keys):
        """Adding a signature does not invalidate earlier ones."""
        second = KeyManager.generate_keypair()
        model = MatchRecord.model_validate(make_record())
        unsigned = canonicalize(model.unsigned_document())

        model = model.with_signature(Signer.sign(unsigned, player_keys.private_key))
        model = model.with_signature(Signer.sign(unsigned, second.private_key))

        again = canonicalize(model.unsigned_document())
        assert again == unsigned
        assert all(Signer.verify(again, s) for s in model.signatures)


class TestSigningService:
    """The coordinator key singleton."""

    def test_ephemeral_key_in_development(self):
        with pytest.warns(UserWarning, match="ephemeral"):
            service = get_signing_service()
        assert service.is_ephemeral
        assert len(service.public_key) == 64

    def test_singleton(self, coordinator_keys):
        assert get_signing_service() is get_signing_service()

    def test_loads_configured_key(self, coordinator_keys):
        service = get_signing_service()
        assert not service.is_ephemeral
        assert service.public_key == coordinator_keys.public_key

    def test_production_requires_key(self, monkeypatch):
        monkeypatch.setenv("MATCHPROOF_PRODUCTION", "true")
        SigningService.reset()
        with pytest.raises(RuntimeError, match="must be set in production"):
            get_signing_service()

    def test_mismatched_public_key_rejected(self, coordinator_keys, monkeypatch):
        monkeypatch.setenv("MATCHPROOF_COORDINATOR_PUBLIC_KEY", KeyManager.generate_keypair().public_key)
        SigningService.reset()
        with pytest.raises(RuntimeError, match="do not match"):
            get_signing_service()

    def test_invalid_private_key_rejected(self, monkeypatch):
        monkeypatch.setenv("MATCHPROOF_COORDINATOR_PRIVATE_KEY", "abcd")
        SigningService.reset()
        with pytest.raises(RuntimeError, match="invalid"):
            get_signing_service()

    def test_document_signatures(self, coordinator_keys):
        service = get_signing_service()
        doc = {"batch_id": "batch-1", "merkle_root": "ab" * 32}
        signature = service.sign_document(doc)
        assert service.verify_document(doc, signature)
        assert Signer.verify_raw(canonicalize(doc), signature, coordinator_keys.public_key)
        assert not service.verify_document({**doc, "batch_id": "batch-2"}, signature)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
