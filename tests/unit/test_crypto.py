"""Tests for keyserver.crypto module."""

import os

import pytest
from cryptography.exceptions import InvalidTag

from keyserver.crypto import (
    b64d,
    b64e,
    decrypt,
    derive_keyring_key,
    encrypt,
    generate_salt,
)

ITERATIONS = 1_000


class TestDeriveKeyringKey:
    def test_deterministic_with_same_salt(self):
        salt = generate_salt()
        k1 = derive_keyring_key("passphrase", salt, ITERATIONS)
        k2 = derive_keyring_key("passphrase", salt, ITERATIONS)
        assert k1 == k2

    def test_different_with_different_salt(self):
        k1 = derive_keyring_key("passphrase", generate_salt(), ITERATIONS)
        k2 = derive_keyring_key("passphrase", generate_salt(), ITERATIONS)
        assert k1 != k2

    def test_different_with_different_password(self):
        salt = generate_salt()
        k1 = derive_keyring_key("passphrase1", salt, ITERATIONS)
        k2 = derive_keyring_key("passphrase2", salt, ITERATIONS)
        assert k1 != k2

    def test_different_with_different_iterations(self):
        salt = generate_salt()
        assert derive_keyring_key("p", salt, 1_000) != derive_keyring_key("p", salt, 2_000)

    def test_key_length(self):
        key = derive_keyring_key("test", generate_salt(), ITERATIONS)
        assert len(key) == 32  # 256 bits

    def test_unicode_password(self):
        salt = generate_salt()
        assert derive_keyring_key("pässwörd🔑", salt, ITERATIONS) == derive_keyring_key(
            "pässwörd🔑", salt, ITERATIONS
        )


class TestEncryptDecrypt:
    @pytest.fixture
    def key(self):
        return derive_keyring_key("pw", generate_salt(), ITERATIONS)

    def test_roundtrip(self, key):
        ciphertext, nonce = encrypt(key, b"hello world")
        assert decrypt(key, ciphertext, nonce) == b"hello world"

    def test_different_nonce_each_time(self, key):
        _, nonce1 = encrypt(key, b"data")
        _, nonce2 = encrypt(key, b"data")
        assert nonce1 != nonce2

    def test_wrong_key_fails(self, key):
        other = derive_keyring_key("other", generate_salt(), ITERATIONS)
        ciphertext, nonce = encrypt(key, b"secret")
        with pytest.raises(InvalidTag):
            decrypt(other, ciphertext, nonce)

    def test_tampered_ciphertext_fails(self, key):
        ciphertext, nonce = encrypt(key, b"secret")
        tampered = bytearray(ciphertext)
        tampered[0] ^= 0xFF
        with pytest.raises(InvalidTag):
            decrypt(key, bytes(tampered), nonce)

    def test_empty_plaintext(self, key):
        ciphertext, nonce = encrypt(key, b"")
        assert decrypt(key, ciphertext, nonce) == b""

    def test_header_is_authenticated(self, key):
        ciphertext, nonce = encrypt(key, b"secret", b"v1")
        assert decrypt(key, ciphertext, nonce, b"v1") == b"secret"
        with pytest.raises(InvalidTag):
            decrypt(key, ciphertext, nonce, b"v2")


class TestBase64:
    def test_roundtrip(self):
        data = os.urandom(64)
        assert b64d(b64e(data)) == data

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            b64d("not*base64!")
