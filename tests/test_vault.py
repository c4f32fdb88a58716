import pytest

from gateway.errors import DecryptionError
from gateway.security.vault import IV_LENGTH, CredentialVault, derive_key


def test_round_trip_and_fresh_iv_per_call():
    vault = CredentialVault("master-key")

    first = vault.encrypt("hunter2")
    second = vault.encrypt("hunter2")

    assert first != second
    iv_hex, _, body_hex = first.partition(":")
    assert len(bytes.fromhex(iv_hex)) == IV_LENGTH
    assert len(bytes.fromhex(body_hex)) % IV_LENGTH == 0
    assert vault.decrypt(first) == "hunter2"
    assert vault.decrypt(second) == "hunter2"


def test_json_bundle_round_trip():
    vault = CredentialVault("master-key")
    bundle = {"bot_token": "123:abc", "webhook_secret": "s3cret"}

    assert vault.decrypt_json(vault.encrypt_json(bundle)) == bundle


def test_wrong_key_is_a_decryption_error():
    ciphertext = CredentialVault("master-key").encrypt("hunter2")

    with pytest.raises(DecryptionError):
        CredentialVault("another-key").decrypt(ciphertext)


@pytest.mark.parametrize("stored", ["", "no-separator", "zz:zz", "00:", "0011:00112233"])
def test_malformed_values_are_decryption_errors(stored):
    with pytest.raises(DecryptionError):
        CredentialVault("master-key").decrypt(stored)


def test_key_is_padded_or_truncated_to_32_bytes():
    assert derive_key("short") == b"short" + b"\0" * 27
    assert derive_key("x" * 40) == b"x" * 32


def test_empty_master_key_is_rejected():
    with pytest.raises(ValueError):
        CredentialVault("")
