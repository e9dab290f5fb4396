"""
Tests for token encryption and log redaction.
"""

import pytest

from melody_map.utils.crypto import (
    CryptoService,
    CryptoServiceError,
    DecryptionError,
    generate_fernet_key,
)
from melody_map.utils.logging import (
    EnvironmentProcessor,
    RequestContextProcessor,
    clear_request_context,
    filter_sensitive_data,
    set_request_context,
)


class TestCryptoService:
    def test_encrypt_decrypt(self):
        crypto = CryptoService(generate_fernet_key(), additional_keys_b64="")

        ciphertext = crypto.encrypt_token("BQD-spotify-access-token")

        assert b"spotify" not in ciphertext
        assert crypto.decrypt_token(ciphertext) == "BQD-spotify-access-token"

    def test_rotated_key_still_decrypts(self):
        old_key = generate_fernet_key()
        old_ciphertext = CryptoService(old_key, additional_keys_b64="").encrypt_token("R")

        rotated = CryptoService(generate_fernet_key(), additional_keys_b64=old_key)

        assert rotated.get_key_count() == 2
        assert rotated.decrypt_token(old_ciphertext) == "R"

    def test_wrong_key_fails(self):
        ciphertext = CryptoService(generate_fernet_key(), additional_keys_b64="").encrypt_token("R")

        with pytest.raises(DecryptionError):
            CryptoService(generate_fernet_key(), additional_keys_b64="").decrypt_token(ciphertext)

    def test_empty_token_rejected(self):
        crypto = CryptoService(generate_fernet_key(), additional_keys_b64="")

        with pytest.raises(CryptoServiceError):
            crypto.encrypt_token("")

    def test_invalid_key(self):
        with pytest.raises(CryptoServiceError):
            CryptoService("not-a-fernet-key", additional_keys_b64="")


class TestLogProcessors:
    def test_tokens_are_masked(self):
        event = filter_sensitive_data(
            None,
            "info",
            {
                "event": "Token refresh",
                "access_token": "BQDabcdefghijklmnop",
                "refresh_token": "short",
                "connection_id": "abc",
            },
        )

        assert event["access_token"] == "BQDa...mnop"
        assert event["refresh_token"] == "***REDACTED***"
        assert event["connection_id"] == "abc"

    def test_token_flags_are_not_masked(self):
        event = filter_sensitive_data(
            None,
            "info",
            {
                "event": "Token refresh successful",
                "has_new_refresh_token": True,
                "refresh_token": None,
                "access_token": False,
            },
        )

        assert event["has_new_refresh_token"] is True
        assert event["refresh_token"] is None
        assert event["access_token"] is False

    def test_request_context_added(self):
        set_request_context(request_id="req-1")
        set_request_context(user_id="user-1")
        try:
            event = RequestContextProcessor()(None, "info", {"event": "x"})
        finally:
            clear_request_context()

        assert event["request_id"] == "req-1"
        assert event["user_id"] == "user-1"
        assert "request_id" not in RequestContextProcessor()(None, "info", {"event": "y"})

    def test_environment_added(self):
        event = EnvironmentProcessor("test", "0.1.0")(None, "info", {"event": "x"})

        assert event["env"] == "test"
        assert event["version"] == "0.1.0"
