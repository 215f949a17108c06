"""
Principal authentication.

Local accounts check a PBKDF2 hash; accounts bound to a login source are
checked by the ExternalAuthenticator registered for that source's variant.
Personal access tokens are accepted wherever a password is.
"""

import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AuthenticationError, InvalidInputError, UserNotFound
from app.models import AccessToken, LoginSource, User
from app.schemas.login_source import LoginSourceConfig, parse_login_source_config

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 10000
PBKDF2_KEY_LENGTH = 50
# Password values git clients send alongside a token used as the username
TOKEN_PLACEHOLDER_PASSWORDS = ("", "x-oauth-basic")


def generate_salt() -> str:
    return secrets.token_hex(5)


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS, PBKDF2_KEY_LENGTH
    ).hex()


def set_password(user: User, password: str) -> None:
    user.salt = generate_salt()
    user.passwd = hash_password(password, user.salt)


def validate_password(user: User, password: str) -> bool:
    if not user.passwd:
        return False
    return hmac.compare_digest(hash_password(password, user.salt), user.passwd)


def parse_basic_auth(header: str | None) -> tuple[str, str] | None:
    """Decode an ``Authorization: Basic`` header into (username, password)."""
    if not header:
        return None
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(parts[1]).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


# -----------------------------------------------------------------------------
# External authenticators
# -----------------------------------------------------------------------------

@dataclass
class ExternalIdentity:
    login_name: str
    email: str = ""
    full_name: str = ""
    is_admin: bool = False


class ExternalAuthenticator(Protocol):
    async def authenticate(self, config: LoginSourceConfig, login: str, password: str) -> ExternalIdentity | None:
        ...


_authenticators: dict[str, ExternalAuthenticator] = {}


def register_authenticator(variant: str, authenticator: ExternalAuthenticator) -> None:
    _authenticators[variant] = authenticator


def unregister_authenticator(variant: str) -> None:
    _authenticators.pop(variant, None)


async def _external_sign_in(session: AsyncSession, user: User, password: str) -> User:
    source = await session.get(LoginSource, user.login_source)
    if source is None or not source.is_actived:
        raise AuthenticationError("login source is not available")

    config = parse_login_source_config(source.cfg)
    authenticator = _authenticators.get(config.type)
    if authenticator is None:
        raise AuthenticationError(f"no authenticator registered for {config.type}")

    identity = await authenticator.authenticate(config, user.login_name or user.name, password)
    if identity is None:
        raise AuthenticationError("invalid credentials")
    return user


# -----------------------------------------------------------------------------
# Lookups
# -----------------------------------------------------------------------------

async def get_user_by_name(session: AsyncSession, name: str) -> User:
    result = await session.execute(select(User).where(User.lower_name == name.lower()))
    user = result.scalar_one_or_none()
    if user is None:
        raise UserNotFound(f"user does not exist: {name}")
    return user


async def get_user_by_id(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise UserNotFound(f"user does not exist: {user_id}")
    return user


async def create_user(session: AsyncSession, name: str, email: str, password: str, is_admin: bool = False) -> User:
    taken = (await session.execute(select(func.count(User.id)).where(User.lower_name == name.lower()))).scalar_one()
    if taken:
        raise InvalidInputError(f"user already exists: {name}")
    user = User(name=name, lower_name=name.lower(), email=email, is_admin=is_admin)
    set_password(user, password)
    session.add(user)
    await session.commit()
    logger.info(f"Created user {name}")
    return user


async def user_sign_in(session: AsyncSession, login: str, password: str) -> User:
    """Validate a username or email plus password. Raises UserNotFound or AuthenticationError."""
    if "@" in login:
        result = await session.execute(select(User).where(func.lower(User.email) == login.lower()))
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFound(f"user does not exist: {login}")
    else:
        user = await get_user_by_name(session, login)

    if user.prohibit_login or not user.is_active:
        raise AuthenticationError("user is not allowed to sign in")

    if user.is_local:
        if not validate_password(user, password):
            raise AuthenticationError("invalid credentials")
        return user
    return await _external_sign_in(session, user, password)


# -----------------------------------------------------------------------------
# Access tokens
# -----------------------------------------------------------------------------

def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def create_access_token(session: AsyncSession, user: User, name: str) -> tuple[AccessToken, str]:
    """Create a token and return it with its plaintext, which is not stored."""
    plaintext = secrets.token_hex(20)
    token = AccessToken(uid=user.id, name=name, sha256=hash_token(plaintext))
    session.add(token)
    await session.flush()
    return token, plaintext


async def get_access_token(session: AsyncSession, plaintext: str) -> AccessToken | None:
    if not plaintext:
        return None
    result = await session.execute(select(AccessToken).where(AccessToken.sha256 == hash_token(plaintext)))
    return result.scalar_one_or_none()


async def authenticate_token(session: AsyncSession, plaintext: str) -> User | None:
    token = await get_access_token(session, plaintext)
    if token is None:
        return None
    token.updated_at = datetime.utcnow()
    user = await session.get(User, token.uid)
    if user is None or user.prohibit_login or not user.is_active:
        return None
    return user


async def authenticate_basic(session: AsyncSession, header: str | None) -> User | None:
    """Resolve Basic credentials to a user: password, token as password, or token as username.

    Returns None when the header is absent or malformed; raises AuthenticationError
    when credentials were offered but do not validate.
    """
    creds = parse_basic_auth(header)
    if creds is None:
        return None
    username, password = creds

    if password in TOKEN_PLACEHOLDER_PASSWORDS:
        user = await authenticate_token(session, username)
        if user is not None:
            return user
        raise AuthenticationError("invalid token")

    try:
        return await user_sign_in(session, username, password)
    except (UserNotFound, AuthenticationError):
        user = await authenticate_token(session, password)
        if user is not None and user.lower_name == username.lower():
            return user
        user = await authenticate_token(session, username)
        if user is not None:
            return user
        raise AuthenticationError("invalid credentials")
