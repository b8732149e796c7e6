import pytest
from fastapi import HTTPException
from jose import jwt

from auth_utils import create_access_token, get_current_user_id, hash_password, verify_password
from config import JWT_ALGORITHM


def test_password_hash_roundtrip():
    hashed = hash_password("correct horse")
    assert hashed != "correct horse"
    assert verify_password("correct horse", hashed)
    assert not verify_password("battery staple", hashed)


def test_token_identifies_user():
    token = create_access_token({"user_id": 42})
    assert get_current_user_id(token) == 42


def test_expired_token():
    token = create_access_token({"user_id": 42}, expires_minutes=-1)
    with pytest.raises(HTTPException) as exc:
        get_current_user_id(token)
    assert exc.value.status_code == 401


def test_token_signed_with_other_key():
    token = jwt.encode({"user_id": 42}, "someone-elses-key", algorithm=JWT_ALGORITHM)
    with pytest.raises(HTTPException) as exc:
        get_current_user_id(token)
    assert exc.value.status_code == 401


def test_token_without_user_id():
    token = create_access_token({"sub": "nobody"})
    with pytest.raises(HTTPException) as exc:
        get_current_user_id(token)
    assert exc.value.status_code == 401
