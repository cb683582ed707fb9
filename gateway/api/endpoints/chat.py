from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
import logging
from gateway.api.deps import get_current_user_optional, get_chat_gateway
from gateway.core.exceptions import RateLimitExceeded
from gateway.schemas.chat import ChatRequest
from gateway.schemas.user import CurrentUser
from gateway.services.chat import ChatGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])

@router.post("",
    description="Stream a chat completion",
    responses={
        200: {"description": "Streamed completion text, or a rate limit notice"},
        401: {"description": "Not authenticated"},
        422: {"description": "Malformed conversation"},
        503: {"description": "Rate limiter unavailable"}
    })
async def chat(
    request: ChatRequest,
    current_user: Optional[CurrentUser] = Depends(get_current_user_optional),
    chat_gateway: ChatGateway = Depends(get_chat_gateway)
):
    """
    Stream the assistant's next turn for the given conversation.

    The response body is plain text delivered token by token. When the
    generation finishes, the conversation including the assistant's reply
    is saved under the chat ID (a new one is generated if none was sent).
    """
    try:
        return await chat_gateway.handle(current_user, request)
    except (HTTPException, RateLimitExceeded):
        raise
    except Exception as e:
        logger.error(f"Error starting chat completion: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
