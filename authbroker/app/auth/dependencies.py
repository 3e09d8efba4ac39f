"""FastAPI dependencies shared by the auth and user routers."""

from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from .service import AuthService


def get_auth_service(request: Request) -> AuthService:
    """
    Dependency to get the auth service from app state.

    Raises:
        HTTPException: 503 if the application was not wired
    """
    app_state = getattr(request.app.state, "app_state", None)
    service = getattr(app_state, "auth_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Auth service not initialized",
        )
    return service


async def get_current_user(
    authorization: Optional[str] = Header(None),
    service: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    """
    Verified access-credential payload of the caller.

    Usage in routes:
        @router.get("/protected")
        async def protected_route(user: dict = Depends(get_current_user)):
            return {"sub": user["sub"]}
    """
    return service.authenticate(authorization)
