"""
tumulte.api.deps — FastAPI dependency injection
=================================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from tumulte.config import TumulteConfig, load_config
from tumulte.core import Tumulte
from tumulte.database.engine import create_db_engine
from tumulte.errors import CampaignMismatchError, InstanceStateError, NotFoundError, TumulteError

JWT_ALGORITHM = "HS256"

_MIN_SECRET_LENGTH = 32
_PLACEHOLDER_SECRETS = frozenset({"tumulte-dev-secret-change-me", "change-me", "secret", "dev"})


def validate_jwt_secret(secret: str | None) -> str:
    """Return *secret* if it is fit to sign GM and streamer tokens.

    ``JWT_SECRET`` goes through here once, at import: the API does not
    start with a missing, placeholder or short secret.
    """
    if not secret:
        raise RuntimeError(
            "JWT_SECRET is not set; add a random value of at least "
            f"{_MIN_SECRET_LENGTH} characters to .env (e.g. `openssl rand -base64 48`)"
        )
    if secret in _PLACEHOLDER_SECRETS:
        raise RuntimeError(f"JWT_SECRET is the placeholder {secret!r}; set a unique value")
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET has {len(secret)} characters, {_MIN_SECRET_LENGTH} required"
        )
    return secret


JWT_SECRET: str = validate_jwt_secret(os.getenv("JWT_SECRET"))


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> TumulteConfig:
    return load_config(os.getenv("TUMULTE_CONFIG", "config.yaml"))


@lru_cache(maxsize=1)
def get_tumulte() -> Tumulte:
    return Tumulte(get_config(), get_engine())


def _bearer_payload(authorization: str | None) -> dict:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def require_gm(authorization: Annotated[str | None, Header()] = None) -> dict:
    """GM-only routes: a valid token carrying ``is_gm``."""
    payload = _bearer_payload(authorization)
    if not payload.get("is_gm"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not a game master")
    return payload


def require_user(authorization: Annotated[str | None, Header()] = None) -> dict:
    """Any authenticated user (streamers manage their own rewards)."""
    return _bearer_payload(authorization)


def http_error(exc: TumulteError) -> HTTPException:
    """Map an integrity error raised by a service to its HTTP status."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status.HTTP_404_NOT_FOUND, str(exc))
    if isinstance(exc, CampaignMismatchError):
        return HTTPException(status.HTTP_403_FORBIDDEN, str(exc))
    if isinstance(exc, InstanceStateError):
        return HTTPException(status.HTTP_409_CONFLICT, str(exc))
    return HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))


TumulteDep = Annotated[Tumulte, Depends(get_tumulte)]
GmDep = Annotated[dict, Depends(require_gm)]
UserDep = Annotated[dict, Depends(require_user)]
