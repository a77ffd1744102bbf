"""
Unit tests for password hashing and P-256 key derivation.

Tests cover:
- Deterministic wire password hashing without collisions
- Keypair derivation, recreation from the client secret and its validation
- Out-of-range scalar handling
- Raw and DER signatures, verification of tampered messages and signatures
"""

import base64
import random
import string

import pytest
from unittest.mock import patch

from axiom_session.crypto import (
    derive_keypair,
    hash_password,
    public_key_from_private,
    recreate_keypair,
    sign_der,
    sign_raw,
    verify,
)
from axiom_session.crypto import p256
from axiom_session.crypto import password as password_module
from axiom_session.crypto.password import HASH_LENGTH
from axiom_session.exceptions import KeyDerivationError


SALT = bytes(range(32))


@pytest.fixture
def fast_kdf():
    """Cut PBKDF2 iterations for key derivation tests."""
    with patch.object(p256, "PBKDF2_ITERATIONS", 1):
        yield


class TestHashPassword:
    def test_deterministic_base64_digest(self):
        first = hash_password("correct horse")
        second = hash_password("correct horse")

        assert first == second
        assert len(first) == 44
        assert len(base64.b64decode(first)) == HASH_LENGTH

    def test_different_passwords_differ(self):
        assert hash_password("a") != hash_password("b")

    def test_no_collisions_over_random_sample(self):
        rng = random.Random(1234)
        alphabet = string.ascii_letters + string.digits + string.punctuation
        passwords = {
            "".join(rng.choice(alphabet) for _ in range(rng.randint(1, 24)))
            for _ in range(500)
        }

        with patch.object(password_module, "PBKDF2_ITERATIONS", 1):
            digests = {hash_password(p) for p in passwords}

        assert len(digests) == len(passwords)


class TestDeriveKeypair:
    def test_deterministic_for_same_salt(self, fast_kdf):
        first = derive_keypair("password", SALT)
        second = derive_keypair("password", SALT)

        assert first == second
        assert first.client_secret == base64.b64encode(SALT).decode()

    def test_key_encoding(self, fast_kdf):
        keypair = derive_keypair("password", SALT)

        assert len(bytes.fromhex(keypair.private_key)) == 32
        public = bytes.fromhex(keypair.public_key)
        assert len(public) == 33
        assert public[0] in (2, 3)
        assert public_key_from_private(keypair.private_key) == keypair.public_key

    def test_random_salt_when_omitted(self, fast_kdf):
        first = derive_keypair("password")
        second = derive_keypair("password")

        assert first.client_secret != second.client_secret
        assert len(base64.b64decode(first.client_secret)) == 32

    def test_password_changes_key(self, fast_kdf):
        assert derive_keypair("a", SALT) != derive_keypair("b", SALT)

    def test_repr_hides_private_key(self, fast_kdf):
        keypair = derive_keypair("password", SALT)

        assert keypair.private_key not in repr(keypair)

    def test_out_of_range_scalar_retries_with_perturbed_salt(self):
        calls = []

        def scalar(password, salt, attempt):
            calls.append(attempt)
            return p256.CURVE_ORDER if attempt == 0 else 12345

        with patch.object(p256, "_derive_scalar", side_effect=scalar):
            keypair = derive_keypair("password", SALT)

        assert calls == [0, 1]
        assert int(keypair.private_key, 16) == 12345

    def test_gives_up_after_max_attempts(self):
        with patch.object(p256, "_derive_scalar", return_value=0):
            with pytest.raises(KeyDerivationError):
                derive_keypair("password", SALT)

    def test_counter_is_appended_to_salt(self, fast_kdf):
        assert p256._derive_scalar("pw", SALT, 0) != p256._derive_scalar("pw", SALT, 1)


class TestRecreateKeypair:
    def test_recreates_same_keypair(self, fast_kdf):
        original = derive_keypair("password")

        assert recreate_keypair("password", original.client_secret) == original

    def test_rejects_invalid_base64(self):
        with pytest.raises(KeyDerivationError):
            recreate_keypair("password", "not base64!!")

    def test_rejects_wrong_length(self):
        with pytest.raises(KeyDerivationError):
            recreate_keypair("password", base64.b64encode(b"short").decode())


class TestSignatures:
    @pytest.fixture
    def keypair(self, fast_kdf):
        return derive_keypair("password", SALT)

    def test_raw_signature_roundtrip(self, keypair):
        signature = sign_raw(b"payload", keypair.private_key)

        assert len(signature) == 64
        assert verify(b"payload", signature, keypair.public_key)

    def test_der_signature_roundtrip(self, keypair):
        signature = sign_der(b"payload", keypair.private_key)

        assert verify(b"payload", signature, keypair.public_key)

    def test_tampered_message_fails(self, keypair):
        signature = sign_raw(b"payload", keypair.private_key)

        assert not verify(b"payl0ad", signature, keypair.public_key)

    def test_any_flipped_signature_byte_fails(self, keypair):
        signature = sign_raw(b"payload", keypair.private_key)

        for index in range(len(signature)):
            tampered = bytearray(signature)
            tampered[index] ^= 0xFF
            assert not verify(b"payload", bytes(tampered), keypair.public_key), index

    def test_other_key_fails(self, keypair):
        other = derive_keypair("other", SALT)
        signature = sign_raw(b"payload", keypair.private_key)

        assert not verify(b"payload", signature, other.public_key)

    def test_malformed_public_key_fails(self, keypair):
        signature = sign_raw(b"payload", keypair.private_key)

        assert not verify(b"payload", signature, "02" + "00" * 8)

    def test_invalid_private_key(self):
        with pytest.raises(KeyDerivationError):
            sign_raw(b"payload", "00" * 32)
        with pytest.raises(KeyDerivationError):
            sign_raw(b"payload", "zz")
