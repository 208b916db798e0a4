"""
Tests for bearer token signing and verification.
"""

import pytest
from fastapi import HTTPException

from auth.jwt import create_token, verify_token


class TestTokens:
    def test_round_trip(self):
        assert verify_token(create_token("user-1")) == "user-1"

    def test_custom_secret(self):
        token = create_token("user-1", secret="other-secret")

        assert verify_token(token, secret="other-secret") == "user-1"
        with pytest.raises(HTTPException) as info:
            verify_token(token)
        assert info.value.status_code == 401

    def test_expired(self):
        with pytest.raises(HTTPException) as info:
            verify_token(create_token("user-1", expires_in=-10))
        assert "expired" in info.value.detail

    def test_tampered_signature(self):
        payload, _signature = create_token("user-1").split(".", 1)
        with pytest.raises(HTTPException):
            verify_token(payload + "." + "0" * 64)

    @pytest.mark.parametrize("token", ["", "no-dot", "!!!.abc", "e30=.abc"])
    def test_malformed(self, token):
        with pytest.raises(HTTPException) as info:
            verify_token(token)
        assert info.value.status_code == 401

    def test_empty_user_rejected(self):
        with pytest.raises(HTTPException):
            verify_token(create_token(""))
