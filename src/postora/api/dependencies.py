"""Shared FastAPI dependencies for authenticated routes and ledger services."""

from __future__ import annotations

from typing import Any

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postora.config import settings
from postora.database import get_session_factory
from postora.services.credit_service import CreditService
from postora.services.entitlement_reconciler import EntitlementReconciler
from postora.services.ledger_store import LedgerStore

# Optional bearer scheme -- auto_error=False so we can fall back to cookies
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_token_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    access_token: str | None = Cookie(default=None),
) -> dict[str, Any]:
    """Decode the identity provider's access token and return its claims.

    Token sources (checked in order):
      1. Authorization: Bearer <token> header
      2. ``access_token`` cookie

    Raises HTTPException(401) if no valid token is found.
    """
    token: str | None = None

    if credentials is not None:
        token = credentials.credentials
    elif access_token is not None:
        token = access_token

    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
        )
    return payload


async def get_current_user_id(
    claims: dict[str, Any] = Depends(get_token_claims),
) -> str:
    """Return the verified user id (the ``sub`` claim)."""
    return claims["sub"]


def get_credit_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CreditService:
    return CreditService(LedgerStore(session_factory))


def get_reconciler(
    credits: CreditService = Depends(get_credit_service),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> EntitlementReconciler:
    return EntitlementReconciler(credits, session_factory)
