from typing import Callable, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
import logging
import secrets
import string

from gateway.core.exceptions import PersistenceFailure
from gateway.models.chat import ChatRecord
from gateway.schemas.chat import ChatMessage, ChatRequest, MessageRole
from gateway.services.rate_limit import now_ms

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 100
CHAT_ID_ALPHABET = string.digits + string.ascii_letters


def generate_chat_id(size: int = 7) -> str:
    return "".join(secrets.choice(CHAT_ID_ALPHABET) for _ in range(size))


class ChatStore:
    """Key-value store holding chat records and the per-user chat index"""

    async def hash_upsert(self, key: str, record: dict):
        raise NotImplementedError

    async def sorted_set_upsert(self, key: str, score: int, member: str):
        raise NotImplementedError


class MongoChatStore(ChatStore):
    """
    Chat store on MongoDB.

    Records live in ``chats`` with the record key as ``_id``. The per-user
    index lives in ``chat_index`` as one ``{key, member, score}`` document per
    member, unique on ``(key, member)`` so re-adding a member updates its score.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def hash_upsert(self, key: str, record: dict):
        try:
            await self.db.chats.replace_one({"_id": key}, {"_id": key, **record}, upsert=True)
        except PyMongoError as e:
            raise PersistenceFailure(f"Failed to write {key}: {e}") from e

    async def sorted_set_upsert(self, key: str, score: int, member: str):
        try:
            await self.db.chat_index.update_one(
                {"key": key, "member": member},
                {"$set": {"score": score}},
                upsert=True
            )
        except PyMongoError as e:
            raise PersistenceFailure(f"Failed to index {member} under {key}: {e}") from e

    async def ensure_indexes(self):
        await self.db.chat_index.create_index([("key", ASCENDING), ("member", ASCENDING)], unique=True)
        await self.db.chat_index.create_index([("key", ASCENDING), ("score", DESCENDING)])


class ChatPersistence:
    """Writes a finished conversation turn and indexes it for its user"""

    def __init__(
        self,
        store: ChatStore,
        clock: Optional[Callable[[], int]] = None,
        id_factory: Optional[Callable[[], str]] = None
    ):
        self.store = store
        self.clock = clock or now_ms
        self.id_factory = id_factory or generate_chat_id

    def build_record(self, request: ChatRequest, completion: str, user_id: str) -> ChatRecord:
        if not request.messages:
            raise ValueError("Cannot build a chat record without messages")

        chat_id = request.id or self.id_factory()
        return ChatRecord(
            id=chat_id,
            title=request.messages[0].content[:TITLE_MAX_LENGTH],
            user_id=user_id,
            created_at=self.clock(),
            path=f"/chat/{chat_id}",
            messages=[*request.messages, ChatMessage(role=MessageRole.ASSISTANT, content=completion)]
        )

    async def save(self, request: ChatRequest, completion: str, user_id: str) -> ChatRecord:
        """
        Upsert the record under ``chat:{id}`` and add it to ``user:chat:{user_id}``.

        The two writes are not transactional. If indexing fails the record
        stays stored but does not show up in the user's index.
        """
        record = self.build_record(request, completion, user_id)
        record_key = f"chat:{record.id}"

        await self.store.hash_upsert(record_key, record.to_document())
        await self.store.sorted_set_upsert(f"user:chat:{user_id}", record.created_at, record_key)

        logger.info(f"Saved {record_key} for user {user_id}")
        return record
