# -*- coding: utf-8 -*-
"""
Traceability Ledger API Dependencies
====================================

FastAPI dependencies for the ledger router: the service handle stored on
``app.state`` and the caller identity carried by a bearer JWT.

Tokens are issued by the platform's auth service. The ledger only reads
``sub`` (user id) and ``roles`` from the verified payload.

Author: AgriTrace Platform Team
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from agritrace.traceability_ledger.models import CallerIdentity
from agritrace.traceability_ledger.setup import (
    TraceabilityLedgerService,
    get_traceability_ledger,
)

logger = logging.getLogger(__name__)

# Anonymous requests are allowed through; protected routes enforce below.
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_service(request: Request) -> TraceabilityLedgerService:
    """Return the service registered on the application."""
    return get_traceability_ledger(request.app)


def decode_caller(token: str, config: Any) -> CallerIdentity:
    """
    Verify a bearer token and build the caller identity.

    Args:
        token: Encoded JWT
        config: TraceabilityLedgerConfig holding the secret and algorithm

    Returns:
        CallerIdentity for the token subject

    Raises:
        HTTPException: 401 if the token is expired, invalid or has no subject
    """
    try:
        payload = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token: %s", e)
        raise _unauthorized("Invalid authentication token")

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token payload")

    roles = payload.get("roles", [])
    if isinstance(roles, str):
        roles = [roles]

    logger.debug("Authenticated caller: %s", user_id)
    return CallerIdentity(user_id=str(user_id), roles=[str(r) for r in roles])


def get_optional_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    service: TraceabilityLedgerService = Depends(get_service),
) -> Optional[CallerIdentity]:
    """
    Caller identity if a bearer token was sent, None otherwise.

    A token that is present but invalid is still rejected with 401.
    """
    if credentials is None:
        return None
    return decode_caller(credentials.credentials, service.config)


def get_current_caller(
    caller: Optional[CallerIdentity] = Depends(get_optional_caller),
) -> CallerIdentity:
    """
    Caller identity for protected routes.

    Raises:
        HTTPException: 401 if no bearer token was sent
    """
    if caller is None:
        raise _unauthorized("Not authenticated")
    return caller


__all__ = [
    "security",
    "get_service",
    "decode_caller",
    "get_optional_caller",
    "get_current_caller",
]
