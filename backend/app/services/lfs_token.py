"""
Scoped bearer tokens for LFS transfers.

The SSH gateway answers ``git-lfs-authenticate`` with a short-lived HS256
token bound to one repository and one operation; the LFS server accepts it
in place of Basic credentials.
"""

import base64
import time

import jwt

from app.errors import AccessDeniedError

_ALGORITHM = "HS256"
TOKEN_LIFETIME_SECONDS = 5 * 60


def decode_jwt_secret(secret: str) -> bytes:
    """The secret is configured as unpadded base64url."""
    padded = secret + "=" * (-len(secret) % 4)
    return base64.urlsafe_b64decode(padded)


def issue_lfs_token(secret: bytes, repo_id: int, op: str, now: int | None = None) -> str:
    now = int(time.time()) if now is None else now
    payload = {
        "repo": repo_id,
        "op": op,
        "exp": now + TOKEN_LIFETIME_SECONDS,
        "nbf": now,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def verify_lfs_token(secret: bytes, token: str, repo_id: int, require_write: bool) -> dict:
    """Decode ``token`` and check it covers ``repo_id`` (and upload, when writing)."""
    try:
        claims = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except jwt.InvalidTokenError as e:
        raise AccessDeniedError(f"invalid token: {e}")

    if require_write and claims.get("op") != "upload":
        raise AccessDeniedError("token does not grant upload")
    if claims.get("repo") != repo_id:
        raise AccessDeniedError("token is not valid for this repository")
    return claims
