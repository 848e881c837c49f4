"""Tests for local JWT validation."""
from __future__ import annotations

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from auth.middleware import AuthMiddleware
from conftest import JWT_SECRET, make_token


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.fixture
def middleware() -> AuthMiddleware:
    return AuthMiddleware(jwt_secret=JWT_SECRET)


@pytest.mark.asyncio
async def test_valid_token(middleware):
    user = await middleware.verify_token(_credentials(make_token()))
    assert user == {"id": "user_a", "email": "a@example.com"}


@pytest.mark.asyncio
async def test_token_signed_with_other_secret(middleware):
    other = AuthMiddleware(jwt_secret="another-secret")
    with pytest.raises(HTTPException) as exc_info:
        await other.verify_token(_credentials(make_token()))
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Invalid token"


@pytest.mark.asyncio
async def test_token_without_subject(middleware):
    with pytest.raises(HTTPException) as exc_info:
        await middleware.verify_token(_credentials(make_token(sub="")))
    assert exc_info.value.status_code == 401


def test_missing_secret(monkeypatch):
    monkeypatch.delenv("SUPABASE_JWT_SECRET", raising=False)
    with pytest.raises(ValueError):
        AuthMiddleware()
