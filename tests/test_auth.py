"""Tests for bearer tokens."""

import pytest

from medorders.auth import issue_token, parse_authorization, verify_token
from medorders.errors import AuthenticationError


class TestTokens:
    def test_issue_and_verify(self):
        token = issue_token("abc123", "secret")

        assert token.startswith("abc123.")
        assert verify_token(token, "secret") == "abc123"

    def test_wrong_secret_rejected(self):
        token = issue_token("abc123", "secret")

        with pytest.raises(AuthenticationError):
            verify_token(token, "other-secret")

    def test_tampered_user_id_rejected(self):
        signature = issue_token("abc123", "secret").split(".", 1)[1]

        with pytest.raises(AuthenticationError):
            verify_token(f"someone-else.{signature}", "secret")

    @pytest.mark.parametrize("token", ["", "nodot", ".sig", "user."])
    def test_malformed_tokens(self, token):
        with pytest.raises(AuthenticationError):
            verify_token(token, "secret")


class TestParseAuthorization:
    def test_bearer(self):
        assert parse_authorization("Bearer tok.en") == "tok.en"

    def test_scheme_is_case_insensitive(self):
        assert parse_authorization("bearer tok.en") == "tok.en"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   "])
    def test_rejects(self, header):
        with pytest.raises(AuthenticationError):
            parse_authorization(header)
