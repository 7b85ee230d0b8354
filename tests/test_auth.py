"""Session tokens, password hashing and the reCAPTCHA client"""
from datetime import timedelta

import httpx
import pytest

from pharmacy_service.models.user import Role
from pharmacy_service.services.auth import (
    GUEST_ACTOR,
    AuthContext,
    actor_id,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from pharmacy_service.services.recaptcha import RecaptchaClient

CTX = AuthContext(user_id="user-1", role=Role.DOCTOR, email="doc@example.com", name="Dr. Ruiz", phone="+13055550100")


class TestSessionTokens:
    def test_round_trip(self):
        assert decode_access_token(create_access_token(CTX)) == CTX

    def test_expired_token(self):
        token = create_access_token(CTX, expires_delta=timedelta(seconds=-1))
        assert decode_access_token(token) is None

    def test_garbage_token(self):
        assert decode_access_token("not-a-jwt") is None

    def test_actor_id(self):
        assert actor_id(CTX) == "user-1"
        assert actor_id(None) == GUEST_ACTOR

    def test_has_role(self):
        assert CTX.has_role((Role.USER, Role.DOCTOR))
        assert not CTX.has_role((Role.ADMIN,))


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("secret123")
        assert hashed != "secret123"
        assert verify_password("secret123", hashed)
        assert not verify_password("secret124", hashed)


class TestRecaptcha:
    @pytest.mark.asyncio
    async def test_accepted_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert b"response=tok" in request.content
            return httpx.Response(200, json={"success": True})

        client = RecaptchaClient("secret", transport=httpx.MockTransport(handler))
        assert await client.verify("tok") is True
        await client.close()

    @pytest.mark.asyncio
    async def test_rejected_token(self):
        client = RecaptchaClient(
            "secret", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"success": False}))
        )
        assert await client.verify("tok") is False
        await client.close()

    @pytest.mark.asyncio
    async def test_google_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        client = RecaptchaClient("secret", transport=httpx.MockTransport(handler))
        assert await client.verify("tok") is False
        await client.close()
