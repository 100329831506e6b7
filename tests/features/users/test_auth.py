from datetime import datetime, timedelta, timezone

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException

from app.core import config
from app.features.users.auth import profile_from_claims, verify_jwt_token


@pytest.fixture(scope="module")
def rsa_keys():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    return private_key, public_pem


@pytest.fixture()
def verifying(monkeypatch, rsa_keys):
    monkeypatch.setattr(config, "AUTH_JWT_PUBLIC_KEY", rsa_keys[1])
    monkeypatch.setattr(config, "AUTH_JWT_ALGORITHMS", ["RS256"])
    return rsa_keys[0]


def _claims(**extra):
    return {"sub": "user_1", "exp": datetime.now(timezone.utc) + timedelta(minutes=5), **extra}


def test_verifies_signed_token(verifying):
    token = jwt.encode(_claims(email="a@example.com"), verifying, algorithm="RS256")
    assert verify_jwt_token(token)["email"] == "a@example.com"


def test_rejects_token_signed_with_other_key(verifying):
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    token = jwt.encode(_claims(), other, algorithm="RS256")
    with pytest.raises(HTTPException) as exc:
        verify_jwt_token(token)
    assert exc.value.status_code == 401


def test_rejects_unsigned_token_when_key_configured(verifying):
    token = jwt.encode(_claims(), "shared-secret", algorithm="HS256")
    with pytest.raises(HTTPException):
        verify_jwt_token(token)


def test_requires_exp_when_verifying(verifying):
    token = jwt.encode({"sub": "user_1"}, verifying, algorithm="RS256")
    with pytest.raises(HTTPException):
        verify_jwt_token(token)


def test_expired_token_message():
    token = jwt.encode(
        {"sub": "user_1", "exp": datetime.now(timezone.utc) - timedelta(seconds=1)}, "x", algorithm="HS256"
    )
    with pytest.raises(HTTPException) as exc:
        verify_jwt_token(token)
    assert exc.value.detail == "Token has expired"


@pytest.mark.parametrize(
    "claims, expected",
    [
        ({"sub": "u1", "email": "a@b.io", "name": "Ann"}, {"email": "a@b.io", "name": "Ann"}),
        ({"sub": "u1", "primary_email": "a@b.io", "given_name": "Ann", "family_name": "Lee"},
         {"email": "a@b.io", "name": "Ann Lee"}),
        ({"sub": "u1"}, {"email": "u1@users.local", "name": "u1"}),
    ],
)
def test_profile_from_claims(claims, expected):
    assert profile_from_claims(claims) == expected
