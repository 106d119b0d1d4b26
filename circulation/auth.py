from fastapi.security import APIKeyHeader
from fastapi import Depends, HTTPException, Security, status

from circulation.config import Settings, get_settings


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: str = Security(api_key_header),
    settings: Settings = Depends(get_settings),
):
    """
    Dependency guarding the staff and state-changing routes.

    The X-API-Key header must match the configured AUTH_KEY. Patron
    authentication proper belongs to the surrounding application; this only
    keeps the desk's mutating operations off the open network.

    Raises:
        HTTPException: 401 if key is missing, 403 if key is invalid
    """
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API Key is missing. Include it in the 'X-API-Key' header.",
        )

    if api_key != settings.auth_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API Key. Access denied.",
        )

    return True
