"""Tests for bearer token verification."""
import time

import jwt
import pytest
from fastapi import HTTPException, WebSocketDisconnect

from chatcore.auth.dependencies import extract_bearer, get_current_user
from chatcore.auth.service import TokenVerifier, UserRole, get_verifier, set_verifier
from chatcore.config import PLACEHOLDER_JWT_SECRET
from chatcore.errors import AuthError

SECRET = "unit-secret"


@pytest.fixture
def verifier():
    return TokenVerifier(SECRET)


class TestTokenVerifier:
    def test_issued_token_round_trips(self, verifier):
        token = verifier.issue("u-1", UserRole.PROVIDER, name="Pat", email="pat@x", avatar="http://a")
        user = verifier.verify(token)

        assert user.id == "u-1"
        assert user.role == UserRole.PROVIDER
        assert user.name == "Pat"
        assert user.email == "pat@x"
        assert user.avatar == "http://a"

    def test_missing_token(self, verifier):
        with pytest.raises(AuthError):
            verifier.verify(None)
        with pytest.raises(AuthError):
            verifier.verify("")

    def test_wrong_secret(self, verifier):
        token = TokenVerifier("other-secret").issue("u-1")
        with pytest.raises(AuthError) as exc_info:
            verifier.verify(token)
        assert exc_info.value.code == "auth_error"

    def test_expired_token(self, verifier):
        token = verifier.issue("u-1", expires_in_seconds=-10)
        with pytest.raises(AuthError) as exc_info:
            verifier.verify(token)
        assert exc_info.value.code == "token_expired"

    def test_user_id_claim_fallbacks(self, verifier):
        token = jwt.encode({"userId": "u-7", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
        assert verifier.verify(token).id == "u-7"

        token = jwt.encode({"id": 42, "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
        assert verifier.verify(token).id == "42"

    def test_token_without_user_id(self, verifier):
        token = jwt.encode({"role": "admin"}, SECRET, algorithm="HS256")
        with pytest.raises(AuthError):
            verifier.verify(token)

    def test_role_defaults_and_case(self, verifier):
        token = jwt.encode({"sub": "u-1", "role": "ADMIN"}, SECRET, algorithm="HS256")
        assert verifier.verify(token).role == UserRole.ADMIN

        token = jwt.encode({"sub": "u-1"}, SECRET, algorithm="HS256")
        assert verifier.verify(token).role == UserRole.CUSTOMER

    def test_unknown_role(self, verifier):
        token = jwt.encode({"sub": "u-1", "role": "wizard"}, SECRET, algorithm="HS256")
        with pytest.raises(AuthError):
            verifier.verify(token)


class TestDependencies:
    @pytest.mark.parametrize("header,expected", [
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        (None, None),
    ])
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected

    @pytest.mark.asyncio
    async def test_get_current_user(self):
        set_verifier(TokenVerifier(SECRET))
        user = await get_current_user(f"Bearer {get_verifier().issue('u-1')}")
        assert user.id == "u-1"

    @pytest.mark.asyncio
    async def test_get_current_user_rejects(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("Bearer junk")
        assert exc_info.value.status_code == 401


class TestUnconfiguredSecret:
    def test_placeholder_secret_rejects_its_own_tokens(self):
        verifier = TokenVerifier(PLACEHOLDER_JWT_SECRET)
        token = verifier.issue("u-1")

        assert verifier.configured is False
        with pytest.raises(AuthError) as exc_info:
            verifier.verify(token)
        assert exc_info.value.code == "auth_unconfigured"

    def test_empty_secret_rejects_everything(self):
        verifier = TokenVerifier("")
        assert verifier.configured is False
        with pytest.raises(AuthError):
            verifier.verify("anything")

    def test_default_config_refuses_handshake_and_rest(self, api_client):
        set_verifier(None)
        token = TokenVerifier(PLACEHOLDER_JWT_SECRET).issue("mallory")

        assert get_verifier().configured is False
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect(f"/ws?token={token}"):
                pass
        assert exc_info.value.code == 4001

        response = api_client.get(
            "/messages/conversations", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401
