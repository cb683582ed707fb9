from typing import Optional
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from gateway.core.security import decode_user_id
from gateway.schemas.user import CurrentUser
from gateway.services.chat import ChatGateway

# Tokens are issued by the auth service, a missing token means anonymous
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

def get_chat_gateway(request: Request) -> ChatGateway:
    return request.app.chat_gateway

async def get_current_user_optional(
    token: Optional[str] = Depends(oauth2_scheme)
) -> Optional[CurrentUser]:
    if not token:
        return None

    user_id = decode_user_id(token)
    if user_id is None:
        return None

    return CurrentUser(id=user_id)
