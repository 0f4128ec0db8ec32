import pytest

from collab.auth import mint_token, verify_token
from collab.errors import AuthenticationFailed


def test_round_trip_identity() -> None:
    assert verify_token(mint_token("user-1", "Alice")) == "user-1"


def test_expired_token_rejected() -> None:
    token = mint_token("user-1", ttl=-60)
    with pytest.raises(AuthenticationFailed, match="expired"):
        verify_token(token)


@pytest.mark.parametrize("token", [None, "", "garbage"])
def test_missing_or_garbage_token_rejected(token) -> None:
    with pytest.raises(AuthenticationFailed):
        verify_token(token)


def test_token_signed_with_other_secret_rejected() -> None:
    import jwt

    forged = jwt.encode({"sub": "admin"}, "not-the-secret", algorithm="HS256")
    with pytest.raises(AuthenticationFailed):
        verify_token(forged)
