"""
API dependencies for Registrations Service.
Handles authentication, hub access, and health checks.
"""

from typing import Optional, Dict, Any
from fastapi import Depends, HTTPException, Path, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging

from registrations.core.config import config
from registrations.db.database import db_manager
from registrations.db.redis_client import redis_manager
from registrations.schemas.registration import OfferingCollection, OfferingKind
from registrations.services.registration_hub import RegistrationHub
from registrations.services.registration_store import AuthSession

logger = logging.getLogger(__name__)

# Anonymous callers may browse counts, so a missing token is not an error.
security = HTTPBearer(auto_error=False)


class AuthenticationError(Exception):
    """Custom exception for authentication errors."""
    pass


async def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate an access token issued by the auth provider.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        jwt_secret = await config.get_jwt_secret()
        jwt_algorithm = await config.get_jwt_algorithm()
        audience = await config.get_jwt_audience()

        return jwt.decode(
            token,
            jwt_secret,
            algorithms=[jwt_algorithm],
            audience=audience,
            options={"verify_aud": audience is not None}
        )

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_optional_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[AuthSession]:
    """
    Resolve the caller from the bearer token.

    Returns:
        The signed-in caller, or None for anonymous requests
    """
    if credentials is None:
        return None

    payload = await decode_access_token(credentials.credentials)
    try:
        user_id = payload.get("sub") or payload.get("user_id")
        if not user_id:
            raise AuthenticationError("Invalid token: missing subject")
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    return AuthSession(user_id=str(user_id), claims=payload)


async def get_required_auth(
    auth: Optional[AuthSession] = Depends(get_optional_auth)
) -> AuthSession:
    """Require a signed-in caller."""
    if auth is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return auth


async def get_registration_hubs(request: Request) -> Dict[OfferingKind, RegistrationHub]:
    """The hubs created during application startup, one per kind of offering."""
    hubs = getattr(request.app.state, "registration_hubs", None)
    if not hubs:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Registration service is starting"
        )
    return hubs


async def get_registration_hub(
    collection: OfferingCollection = Path(..., description="events or activities"),
    hubs: Dict[OfferingKind, RegistrationHub] = Depends(get_registration_hubs)
) -> RegistrationHub:
    """The hub for the kind of offering named in the path."""
    return hubs[collection.kind]


async def check_service_health() -> Dict[str, Any]:
    """
    Check the health of all service dependencies.

    Returns:
        Dictionary with health status of all components
    """
    health_status = {
        "database": "healthy" if await db_manager.health_check() else "unhealthy",
        "redis": "healthy" if await redis_manager.health_check() else "unhealthy",
    }

    if health_status["database"] == "healthy" and health_status["redis"] == "healthy":
        health_status["overall"] = "healthy"
    else:
        health_status["overall"] = "unhealthy"

    return health_status
