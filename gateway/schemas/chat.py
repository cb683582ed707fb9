from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from enum import Enum

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str

class ChatRequest(BaseModel):
    id: Optional[str] = Field(None, description="Chat ID, generated when missing")
    messages: List[ChatMessage] = Field(..., min_length=1, description="Conversation so far, oldest first")

class GenerationParams(BaseModel):
    max_new_tokens: int = 200
    typical_p: float = 0.2
    repetition_penalty: float = 1.0
    truncate: int = 1000
    return_full_text: bool = False
