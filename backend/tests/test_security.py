"""
Bearer token decoding into the calling actor
"""

import uuid
from datetime import timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from packtrip.core.security import Actor, create_access_token, decode_actor
from packtrip.db.models import UserRole


def test_token_round_trip(settings):
    user_id = uuid.uuid4()
    token = create_access_token(user_id, role=UserRole.OWNER, settings=settings)
    actor = decode_actor(token, settings)
    assert actor == Actor(user_id=user_id, role=UserRole.OWNER)
    assert actor.is_staff


def test_customer_is_not_staff():
    assert not Actor(user_id=uuid.uuid4(), role=UserRole.CUSTOMER).is_staff


def test_expired_token_rejected(settings):
    token = create_access_token(uuid.uuid4(), expires_delta=timedelta(minutes=-1), settings=settings)
    with pytest.raises(HTTPException) as exc:
        decode_actor(token, settings)
    assert exc.value.status_code == 401


def test_wrong_secret_rejected(settings):
    other = settings.model_copy(update={"JWT_SECRET": "someone-else"})
    token = create_access_token(uuid.uuid4(), settings=other)
    with pytest.raises(HTTPException):
        decode_actor(token, settings)


@pytest.mark.parametrize("claims", [
    {"sub": "not-a-uuid", "type": "access"},
    {"sub": str(uuid.uuid4()), "type": "refresh"},
    {"sub": str(uuid.uuid4()), "type": "access", "role": "superuser"},
    {"type": "access"},
])
def test_malformed_claims_rejected(settings, claims):
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(HTTPException):
        decode_actor(token, settings)
