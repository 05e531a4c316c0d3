from __future__ import annotations

import logging
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from progress_engine.core.errors import ProgressEngineError
from progress_engine.models.principal import Principal
from progress_engine.services import token_service

logger = logging.getLogger(__name__)

# Tokens come from the upstream auth service; tokenUrl only feeds the docs UI.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/oauth/token")

_STATUS_BY_CODE = {
    "STALE": 422,
    "INVALID_TRANSITION": 422,
    "INVALID_STRUCTURE": 422,
    "COHORT_TOO_SMALL": 422,
    "LEDGER_TIMEOUT": 503,
    "STRUCTURE_UNAVAILABLE": 503,
    "SNAPSHOT_CONFLICT": 409,
}


def require_user(
    raw_token: Annotated[str, Depends(oauth2_scheme)],
) -> Principal:
    """Validate the bearer token and return the caller's Principal."""
    try:
        claims = token_service.decode_access_token(raw_token)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    return Principal(
        user_id=claims["sub"],
        roles=frozenset(claims.get("roles", [])),
    )


def require_any_role(roles: set[str]):
    """Dependency factory: demand at least one of the given roles.

    Usage: Depends(require_any_role({"admin", "instructor"}))
    """

    def _guard(
        principal: Annotated[Principal, Depends(require_user)],
    ) -> Principal:
        if not principal.has_any_role(roles):
            logger.warning(
                "Access denied: user=%s has none of roles=%s",
                principal.user_id,
                sorted(roles),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return _guard


def http_error(exc: ProgressEngineError) -> HTTPException:
    """Translate an engine error into the API's error body.

    The body always carries ``code`` and ``retryable`` so clients can
    tell "fix the request" from "try again later".
    """
    headers = {"Retry-After": "1"} if exc.retryable else None
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        detail={"code": exc.code, "detail": exc.detail, "retryable": exc.retryable},
        headers=headers,
    )
