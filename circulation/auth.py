from typing import NamedTuple, Optional

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from circulation.config import AUTH_KEY
from circulation.models import Role


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class Principal(NamedTuple):
    """Caller identity supplied by the upstream authentication layer."""

    id: int
    role: Role


async def verify_api_key(api_key: str = Security(api_key_header)):
    """
    Dependency function to verify API key authentication.

    Internal Working:
    1. FastAPI extracts the X-API-Key header value
    2. Passes it to this function as the api_key parameter
    3. We compare it against the expected AUTH_KEY
    4. If invalid, raise HTTPException (stops request processing)
    5. If valid, function returns (endpoint handler proceeds)

    Raises:
        HTTPException: 401 if key is missing, 403 if key is invalid
    """
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API Key is missing. Include it in the 'X-API-Key' header.",
        )

    if api_key != AUTH_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API Key. Access denied.",
        )

    return True


async def get_principal(
    _: bool = Depends(verify_api_key),
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> Principal:
    """
    Read the already-authenticated caller from the request headers.

    Session issuance lives upstream; this service trusts the id and role it
    is given once the shared API key matches.

    Raises:
        HTTPException: 401 if the identity headers are missing or malformed
    """
    if user_id is None or user_role is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Include 'X-User-Id' and 'X-User-Role' headers.",
        )

    try:
        principal = Principal(id=int(user_id), role=Role(user_role.upper()))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed. Invalid user id or role.",
        )

    if principal.id <= 0:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed. Invalid user id or role.",
        )
    return principal


def require_roles(*roles: Role):
    """
    Build a dependency that admits only the given roles.

    Usage in endpoints:
    @app.post("/book/borrow", dependencies=[Depends(require_roles(Role.ADMIN))])
    """

    async def check(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access denied. Your role cannot perform this action.",
            )
        return principal

    return check


staff_only = require_roles(Role.ADMIN, Role.SUPERADMIN)
superadmin_only = require_roles(Role.SUPERADMIN)
member_only = require_roles(Role.MEMBER)
