import uuid
from datetime import datetime, timedelta, timezone

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

# Registered claims stripped before the payload is matched against scan shapes.
_ENVELOPE_CLAIMS = ("exp", "iat", "nbf", "nonce", "jti")


def mint_scan_token(payload: dict, secret: str, ttl_minutes: int = 60 * 24) -> str:
    claims = dict(payload)
    claims["nonce"] = str(uuid.uuid4())
    claims["exp"] = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).timestamp())
    return jwt.encode(claims, secret, algorithm="HS256")


def verify_scan_token(token: str, secret: str) -> dict:
    """Returns the scan payload carried by a signed token, envelope claims removed."""
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except ExpiredSignatureError:
        raise ValueError("EXPIRED")
    except JWTError:
        raise ValueError("INVALID_TOKEN")

    if "exp" not in claims:
        raise ValueError("INVALID_TOKEN")

    return {k: v for k, v in claims.items() if k not in _ENVELOPE_CLAIMS}


def looks_like_scan_token(token: str) -> bool:
    """True when the first segment decodes to a JWT header; dotted references do not."""
    try:
        jwt.get_unverified_header(token)
    except JWTError:
        return False
    return True
