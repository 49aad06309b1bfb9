"""Actor resolution -- turns a bearer token into the ``Actor`` a transition is attributed to.

Tokens are issued by the auth collaborator and carry the actor id in ``sub``
and the acting role in ``role``.  Requests without a valid token are refused;
the service never substitutes a default actor.
"""

from __future__ import annotations

import logging

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from job_lifecycle.config import LifecycleSettings
from job_lifecycle.models import Actor

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)

_settings: LifecycleSettings | None = None


def set_settings(settings: LifecycleSettings) -> None:
    """Wire the application settings into this module.

    Args:
        settings: The application-wide ``LifecycleSettings`` instance.
    """
    global _settings
    _settings = settings


def _get_settings() -> LifecycleSettings:
    if _settings is None:
        raise HTTPException(status_code=503, detail="Auth settings not initialised")
    return _settings


def decode_actor(token: str, settings: LifecycleSettings) -> Actor:
    """Verify *token* and extract the actor it names.

    Args:
        token: Encoded JWT.
        settings: Supplies the secret and algorithm.

    Returns:
        The ``Actor`` from the token's ``sub`` and ``role`` claims.

    Raises:
        HTTPException: 401 when the token is expired, malformed, or lacks
            either claim.
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        logger.info("Rejected expired actor token")
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.PyJWTError as exc:
        logger.info("Rejected invalid actor token: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    actor_id = payload.get("sub")
    role = payload.get("role")
    if not actor_id or not role:
        logger.info("Rejected actor token without sub/role claims")
        raise HTTPException(status_code=401, detail="Token must name an actor and a role")
    return Actor(id=str(actor_id), role=str(role))


def get_actor(creds: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> Actor:
    """FastAPI dependency resolving the calling actor.

    Raises:
        HTTPException: 401 when no bearer token is supplied or it is invalid.
    """
    if creds is None or not creds.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return decode_actor(creds.credentials, _get_settings())
