from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from apps.api.app.core.errors import AuthenticationError
from apps.api.app.core.security import verify_access_token
from apps.api.app.schemas.auth import AccessTokenClaims


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/mobile/login")

UNAUTHENTICATED_DETAIL = "Invalid or expired token"


def unauthenticated() -> HTTPException:
    # Invalid, expired and revoked credentials are indistinguishable to callers.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=UNAUTHENTICATED_DETAIL,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_claims(
    token: str = Depends(oauth2_scheme),
) -> AccessTokenClaims:
    """
    Validates the bearer access token and returns its claims.
    """
    try:
        return verify_access_token(token)
    except AuthenticationError:
        raise unauthenticated()


def require_role(*allowed_roles: str):
    """
    Dependency factory restricting a route to the given roles.
    Usage:
        claims: AccessTokenClaims = Depends(require_role("super_admin"))
    """

    def role_checker(
        claims: AccessTokenClaims = Depends(get_current_claims),
    ) -> AccessTokenClaims:
        if claims.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return claims

    return role_checker
