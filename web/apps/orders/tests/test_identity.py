from datetime import timedelta

import jwt
import pytest

from apps.orders.errors import AuthError
from apps.orders.identity import JwtIdentityProvider


@pytest.fixture
def identity():
    return JwtIdentityProvider("s3cret")


def test_round_trip(identity):
    assert identity.verify_token(identity.issue_token("user-42")) == "user-42"


def test_rejections(identity):
    with pytest.raises(AuthError) as e:
        identity.verify_token("")
    assert e.value.reason == "missing token"

    expired = identity.issue_token("user-42", ttl=timedelta(seconds=-5))
    with pytest.raises(AuthError) as e:
        identity.verify_token(expired)
    assert e.value.reason == "token expired"

    forged = JwtIdentityProvider("other").issue_token("user-42")
    with pytest.raises(AuthError) as e:
        identity.verify_token(forged)
    assert e.value.reason == "invalid token"


def test_sub_claim_is_required(identity):
    token = jwt.encode({"exp": 4102444800}, "s3cret", algorithm="HS256")
    with pytest.raises(AuthError):
        identity.verify_token(token)


def test_audience_is_checked_when_configured():
    scoped = JwtIdentityProvider("s3cret", audience="orders")
    assert scoped.verify_token(scoped.issue_token("u1")) == "u1"
    with pytest.raises(AuthError):
        scoped.verify_token(JwtIdentityProvider("s3cret").issue_token("u1"))
