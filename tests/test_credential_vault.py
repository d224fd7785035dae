"""
Tests for AES-256-GCM token sealing.
"""

import pytest

from payroll_sync.credential_vault import (
    CredentialVault,
    DecryptionError,
    VaultKeyError,
)


@pytest.fixture
def vault():
    return CredentialVault(bytes(range(32)))


class TestCredentialVault:
    """Round trip, format and tamper detection."""

    def test_round_trip(self, vault):
        token = "AB11705364889LjOu6qq2A5i0sZrkjzlBBWMZIcN6a1tEfeVfS"
        assert vault.decrypt(vault.encrypt(token)) == token

    def test_round_trip_unicode_and_empty(self, vault):
        assert vault.decrypt(vault.encrypt("")) == ""
        assert vault.decrypt(vault.encrypt("tökén ✓")) == "tökén ✓"

    def test_stored_format(self, vault):
        """Stored values are iv:tag:ciphertext in hex."""
        stored = vault.encrypt("secret")
        iv, tag, ciphertext = stored.split(":")

        assert len(bytes.fromhex(iv)) == 16
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == len("secret")
        assert "secret" not in stored

    def test_fresh_iv_per_call(self, vault):
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_tampered_tag_fails(self, vault):
        iv, tag, ciphertext = vault.encrypt("secret").split(":")
        flipped = format(int(tag[0], 16) ^ 1, "x") + tag[1:]

        with pytest.raises(DecryptionError):
            vault.decrypt(f"{iv}:{flipped}:{ciphertext}")

    def test_tampered_ciphertext_fails(self, vault):
        iv, tag, ciphertext = vault.encrypt("secret").split(":")
        flipped = ciphertext[:-1] + format(int(ciphertext[-1], 16) ^ 1, "x")

        with pytest.raises(DecryptionError):
            vault.decrypt(f"{iv}:{tag}:{flipped}")

    def test_tampered_iv_fails(self, vault):
        iv, tag, ciphertext = vault.encrypt("secret").split(":")
        flipped = format(int(iv[0], 16) ^ 1, "x") + iv[1:]

        with pytest.raises(DecryptionError):
            vault.decrypt(f"{flipped}:{tag}:{ciphertext}")

    def test_wrong_key_fails(self, vault):
        other = CredentialVault(bytes(32))
        with pytest.raises(DecryptionError):
            other.decrypt(vault.encrypt("secret"))

    @pytest.mark.parametrize("stored", [
        "",
        "not-a-token",
        "aa:bb",
        "zz:zz:zz",
        "00:" + "00" * 16 + ":00",
        "00" * 16 + ":00:00",
    ])
    def test_malformed_values_fail(self, vault, stored):
        with pytest.raises(DecryptionError):
            vault.decrypt(stored)


class TestVaultKey:

    def test_short_key_rejected(self):
        with pytest.raises(VaultKeyError):
            CredentialVault(b"short")

    def test_from_hex(self):
        vault = CredentialVault.from_hex("00" * 32)
        assert vault.decrypt(vault.encrypt("x")) == "x"

    def test_from_hex_invalid(self):
        with pytest.raises(VaultKeyError):
            CredentialVault.from_hex("not hex")

    def test_fingerprint_stable_and_short(self):
        a = CredentialVault(bytes(range(32)))
        b = CredentialVault(bytes(range(32)))
        assert a.key_fingerprint == b.key_fingerprint
        assert len(a.key_fingerprint) == 16
        assert a.key_fingerprint != CredentialVault(bytes(32)).key_fingerprint
