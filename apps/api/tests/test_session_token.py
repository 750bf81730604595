import pytest
from jose import jwt

from config import settings
from services.operations import AccountTier
from services.session_token import SESSION_TOKEN_TYPE, create_session_token, decode_session_token


def test_token_round_trips_account_and_tier():
    issued = create_session_token("acct-1", AccountTier.PRO)
    claims = decode_session_token(issued["token"])

    assert issued["tier"] == "pro"
    assert claims.account_id == "acct-1"
    assert claims.tier is AccountTier.PRO
    assert claims.expires_at == issued["expires_at"]


def test_missing_or_unknown_tier_claim_is_free():
    token = jwt.encode(
        {"sub": "acct-2", "type": SESSION_TOKEN_TYPE, "exp": 4102444800},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    assert decode_session_token(token).tier is AccountTier.FREE
    assert decode_session_token(create_session_token("acct-3", "platinum")["token"]).tier is AccountTier.FREE


def test_rejects_foreign_token_type_and_bad_signature():
    foreign = jwt.encode(
        {"sub": "acct-4", "type": "other_session", "exp": 4102444800},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(ValueError, match="type"):
        decode_session_token(foreign)

    forged = jwt.encode(
        {"sub": "acct-4", "type": SESSION_TOKEN_TYPE, "exp": 4102444800},
        "a-completely-different-signing-secret",
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(ValueError, match="Invalid or expired"):
        decode_session_token(forged)
