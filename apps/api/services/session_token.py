"""Signed session tokens carrying the authenticated account id and tier."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from services.operations import AccountTier, resolve_tier


SESSION_TOKEN_TYPE = "ledger_session"


@dataclass(frozen=True)
class SessionClaims:
    account_id: str
    tier: AccountTier
    expires_at: int


def create_session_token(
    account_id: str,
    tier=AccountTier.FREE,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued_at + lifetime).timestamp())
    resolved_tier = resolve_tier(tier)

    token = jwt.encode(
        {
            "sub": account_id,
            "tier": resolved_tier.value,
            "type": SESSION_TOKEN_TYPE,
            "iat": int(issued_at.timestamp()),
            "exp": expires_at,
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    return {"token": token, "tier": resolved_tier.value, "expires_at": expires_at}


def decode_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry and token type; raise ValueError otherwise.

    A token without a ``tier`` claim is treated as a free-tier session.
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require_exp": True, "require_sub": True},
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    account_id = str(payload.get("sub", "")).strip()
    if not account_id:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        account_id=account_id,
        tier=resolve_tier(payload.get("tier")),
        expires_at=int(payload["exp"]),
    )
