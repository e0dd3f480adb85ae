"""
Tests for passkey_vault/crypto/prf_key_derivation.py

Covers:
- Deterministic HKDF root key derivation from PRF output
- Version and input validation
- Setup/unlock paths end to end (without a ceremony)
- PRF support probing
"""

import secrets
from dataclasses import replace

import pytest

from passkey_vault.core.exceptions import WrapUnwrapAuthenticationError
from passkey_vault.crypto.key_wrapping import KeyWrappingService
from passkey_vault.crypto.prf_key_derivation import (
    PRF_SALT_SIZE,
    PRF_VERSION,
    derive_key_from_prf,
    generate_prf_params,
    get_prf_support_info,
    initialize_prf_encryption,
    unlock_prf_encryption,
    wrap_for_credential,
)
from conftest import SoftwareAuthenticator


@pytest.fixture
def prf_output():
    return secrets.token_bytes(32)


class TestDeriveKeyFromPRF:
    """Root key derivation"""

    def test_deterministic(self, prf_output):
        salt = secrets.token_bytes(32)
        assert derive_key_from_prf(prf_output, salt) == derive_key_from_prf(prf_output, salt)

    def test_returns_32_byte_bytearray(self, prf_output):
        key = derive_key_from_prf(prf_output, secrets.token_bytes(32))
        assert isinstance(key, bytearray)
        assert len(key) == 32

    def test_different_salt_different_key(self, prf_output):
        assert derive_key_from_prf(prf_output, secrets.token_bytes(32)) != derive_key_from_prf(
            prf_output, secrets.token_bytes(32)
        )

    def test_different_output_different_key(self):
        salt = secrets.token_bytes(32)
        assert derive_key_from_prf(secrets.token_bytes(32), salt) != derive_key_from_prf(
            secrets.token_bytes(32), salt
        )

    def test_key_is_not_the_prf_output(self, prf_output):
        assert bytes(derive_key_from_prf(prf_output, secrets.token_bytes(32))) != prf_output

    @pytest.mark.parametrize("version", [0, 2, 99])
    def test_unknown_version_rejected(self, prf_output, version):
        with pytest.raises(ValueError):
            derive_key_from_prf(prf_output, secrets.token_bytes(32), version)

    def test_empty_output_rejected(self):
        with pytest.raises(ValueError):
            derive_key_from_prf(b"", secrets.token_bytes(32))

    def test_short_salt_rejected(self, prf_output):
        with pytest.raises(ValueError):
            derive_key_from_prf(prf_output, b"tiny")


class TestPRFParams:
    def test_generate_params(self):
        params = generate_prf_params("cred-a")
        assert len(params.salt) == PRF_SALT_SIZE
        assert params.version == PRF_VERSION
        assert params.credential_id == "cred-a"

    def test_salts_are_random(self):
        assert generate_prf_params().salt != generate_prf_params().salt

    def test_dict_round_trip(self):
        params = generate_prf_params("cred-a")
        assert type(params).from_dict(params.to_dict()) == params


class TestSetupAndUnlock:
    """initialize_prf_encryption / unlock_prf_encryption / wrap_for_credential"""

    def test_unlock_recovers_unit_key(self, prf_output):
        params = generate_prf_params()
        unit_key, wrapped = initialize_prf_encryption(
            prf_output, params, scope_id="user-1", credential_id="cred-a"
        )
        assert unlock_prf_encryption(prf_output, params, wrapped) == unit_key

    def test_xchacha_wrapper(self, prf_output):
        params = generate_prf_params()
        wrapper = KeyWrappingService("xchacha20-poly1305")
        unit_key, wrapped = initialize_prf_encryption(
            prf_output, params, scope_id="user-1", credential_id="cred-a", wrapper=wrapper
        )
        assert wrapped.algorithm == "xchacha20-poly1305"
        assert unlock_prf_encryption(prf_output, params, wrapped, wrapper=wrapper) == unit_key

    def test_other_device_cannot_unlock(self, prf_output):
        params = generate_prf_params()
        _, wrapped = initialize_prf_encryption(prf_output, params, scope_id="user-1", credential_id="cred-a")
        with pytest.raises(WrapUnwrapAuthenticationError):
            unlock_prf_encryption(secrets.token_bytes(32), params, wrapped)

    def test_second_device_wrap(self, prf_output):
        params = generate_prf_params()
        second_output = secrets.token_bytes(32)
        unit_key, _ = initialize_prf_encryption(prf_output, params, scope_id="user-1", credential_id="cred-a")

        wrapped_b = wrap_for_credential(
            unit_key, second_output, params, scope_id="user-1", credential_id="cred-b"
        )

        assert wrapped_b.credential_id == "cred-b"
        assert unlock_prf_encryption(second_output, params, wrapped_b) == unit_key

    @pytest.mark.parametrize("bad", [{"version": 2}, {"salt": b"tiny"}])
    def test_bad_stored_params_fail_like_unwrap(self, prf_output, bad):
        params = generate_prf_params()
        _, wrapped = initialize_prf_encryption(prf_output, params, scope_id="user-1", credential_id="cred-a")

        with pytest.raises(WrapUnwrapAuthenticationError):
            unlock_prf_encryption(prf_output, replace(params, **bad), wrapped)

    def test_empty_prf_output_fails_like_unwrap(self, prf_output):
        params = generate_prf_params()
        _, wrapped = initialize_prf_encryption(prf_output, params, scope_id="user-1", credential_id="cred-a")

        with pytest.raises(WrapUnwrapAuthenticationError):
            unlock_prf_encryption(b"", params, wrapped)

    def test_wrap_for_credential_with_unknown_version(self, prf_output):
        params = replace(generate_prf_params(), version=2)
        with pytest.raises(WrapUnwrapAuthenticationError):
            wrap_for_credential(
                secrets.token_bytes(32), prf_output, params, scope_id="user-1", credential_id="cred-b"
            )

    def test_unit_key_is_random_per_setup(self, prf_output):
        params = generate_prf_params()
        first, _ = initialize_prf_encryption(prf_output, params, scope_id="s", credential_id="c")
        second, _ = initialize_prf_encryption(prf_output, params, scope_id="s", credential_id="c")
        assert first != second


class TestPRFSupportInfo:
    def test_supported(self):
        info = get_prf_support_info(SoftwareAuthenticator())
        assert info.supported is True
        assert info.reason is None

    def test_no_authenticator(self):
        info = get_prf_support_info(SoftwareAuthenticator(available=False))
        assert info.supported is False
        assert "available" in info.reason

    def test_no_prf(self):
        info = get_prf_support_info(SoftwareAuthenticator(prf=False))
        assert info.supported is False
        assert "PRF" in info.reason
