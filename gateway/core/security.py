from typing import Optional
from jose import JWTError, jwt
from gateway.core.config import settings

def decode_user_id(token: str) -> Optional[str]:
    """
    Return the user ID (``sub`` claim) of a valid access token.
    Returns None for expired, tampered or malformed tokens.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")
