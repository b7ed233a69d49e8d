"""Tests for context token signing and verification."""

from __future__ import annotations

import base64
import json
from typing import Any

import jwt
import pytest

from hostrpc.context_token import generate_secret, sign, verify
from hostrpc.errors import AuthenticationError

SECRET = "test-secret-0123456789abcdef0123456789abcdef"


class TestRoundTrip:
    @pytest.mark.parametrize(
        "context",
        [
            {"userId": "user123", "roles": ["admin"]},
            ["a", 1, None],
            "plain",
            42,
            None,
        ],
    )
    def test_context_survives(self, context: Any) -> None:
        assert verify(SECRET, sign(SECRET, context)) == context

    def test_token_has_only_the_context_claim(self) -> None:
        token = sign(SECRET, {"k": "v"})
        payload = jwt.decode(token, options={"verify_signature": False})
        assert payload == {"context": {"k": "v"}}

    def test_header_is_hs256(self) -> None:
        assert jwt.get_unverified_header(sign(SECRET, 1))["alg"] == "HS256"


class TestRejection:
    def test_wrong_secret(self) -> None:
        token = sign("other-secret-0123456789abcdef0123456789abcd", {"a": 1})
        with pytest.raises(AuthenticationError, match="Invalid context token"):
            verify(SECRET, token)

    def test_malformed_token(self) -> None:
        with pytest.raises(AuthenticationError):
            verify(SECRET, "not-a-token")

    def test_tampered_payload(self) -> None:
        header, _, signature = sign(SECRET, {"role": "user"}).split(".")
        forged = base64.urlsafe_b64encode(json.dumps({"context": {"role": "admin"}}).encode())
        token = ".".join([header, forged.decode().rstrip("="), signature])
        with pytest.raises(AuthenticationError):
            verify(SECRET, token)

    def test_unsigned_token(self) -> None:
        token = jwt.encode({"context": 1}, None, algorithm="none")
        with pytest.raises(AuthenticationError):
            verify(SECRET, token)

    def test_missing_context_claim(self) -> None:
        token = jwt.encode({"other": 1}, SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError, match="context"):
            verify(SECRET, token)

    def test_detail_is_kept(self) -> None:
        with pytest.raises(AuthenticationError) as excinfo:
            verify(SECRET, "not-a-token")
        assert excinfo.value.detail
        assert str(excinfo.value) == f"Invalid context token: {excinfo.value.detail}"


class TestGenerateSecret:
    def test_length_and_uniqueness(self) -> None:
        first, second = generate_secret(), generate_secret()
        assert len(first) == 64
        int(first, 16)
        assert first != second
