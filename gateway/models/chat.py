from pydantic import BaseModel, ConfigDict, Field
from typing import List
from gateway.schemas.chat import ChatMessage

class ChatRecord(BaseModel):
    """Finished conversation turn as written to the chat store"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    title: str
    user_id: str = Field(alias="userId")
    created_at: int = Field(alias="createdAt")  # ms since epoch
    path: str
    messages: List[ChatMessage] = Field(default_factory=list)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
