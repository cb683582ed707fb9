from datetime import timedelta
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
import httpx
from gateway.core.config import Settings, settings
from gateway.core.exceptions import AuthenticationMissing, RateLimiterUnavailable, RateLimitExceeded
from gateway.api.endpoints import chat
from gateway.schemas.chat import GenerationParams
from gateway.services.chat import ChatGateway
from gateway.services.inference import HuggingFaceInferenceClient
from gateway.services.persistence import ChatPersistence, MongoChatStore
from gateway.services.rate_limit import (
    MemoryRateLimitStore,
    MongoRateLimitStore,
    RateLimiter,
    format_reset_message,
)
import logging

logger = logging.getLogger(__name__)

app = FastAPI(title="Hugging Face Chat Gateway")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS_LIST,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# Include routers
app.include_router(chat.router, prefix="/api/chat")


@app.get("/")
async def root():
    return {"message": "Hello World"}

# Errors raised before streaming starts are answered in plain text
@app.exception_handler(AuthenticationMissing)
@app.exception_handler(RateLimiterUnavailable)
async def plain_text_error_handler(request: Request, exc: HTTPException):
    return PlainTextResponse(exc.detail, status_code=exc.status_code)

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return PlainTextResponse(format_reset_message(exc.reset))


def create_chat_gateway(db: AsyncIOMotorDatabase, http_client: httpx.AsyncClient, config: Settings) -> ChatGateway:
    """Build the gateway and its collaborators from settings"""
    if config.RATE_LIMIT_BACKEND == "memory":
        rate_limit_store = MemoryRateLimitStore()
    else:
        rate_limit_store = MongoRateLimitStore(db.rate_limits)

    rate_limiter = RateLimiter(
        rate_limit_store,
        limit=config.RATE_LIMIT_REQUESTS,
        window=timedelta(seconds=config.RATE_LIMIT_WINDOW_SECONDS)
    )
    inference_client = HuggingFaceInferenceClient(
        http_client,
        api_url=config.HF_API_URL,
        api_key=config.HUGGINGFACE_API_KEY
    )
    params = GenerationParams(
        max_new_tokens=config.HF_MAX_NEW_TOKENS,
        typical_p=config.HF_TYPICAL_P,
        repetition_penalty=config.HF_REPETITION_PENALTY,
        truncate=config.HF_TRUNCATE,
        return_full_text=False
    )
    return ChatGateway(
        rate_limiter,
        inference_client,
        ChatPersistence(MongoChatStore(db)),
        model=config.HF_MODEL,
        params=params,
        fail_open=config.RATE_LIMIT_FAIL_OPEN
    )


@app.on_event("startup")
async def startup_clients():
    app.mongodb_client = AsyncIOMotorClient(settings.MONGODB_URL)
    app.mongodb = app.mongodb_client[settings.DATABASE_NAME]
    app.http_client = httpx.AsyncClient(timeout=settings.HF_TIMEOUT_SECONDS)
    app.chat_gateway = create_chat_gateway(app.mongodb, app.http_client, settings)
    logger.info(f"Chat gateway ready for model {settings.HF_MODEL}")

    if settings.CREATE_INDEXES_ON_STARTUP:
        try:
            await MongoChatStore(app.mongodb).ensure_indexes()
            await MongoRateLimitStore(app.mongodb.rate_limits).ensure_indexes()
            logger.info("Database indexes ensured")
        except Exception as e:
            logger.warning(f"Failed to create database indexes: {e}")

@app.on_event("shutdown")
async def shutdown_clients():
    # Let in-flight saves finish before closing the database
    try:
        await app.chat_gateway.wait_for_pending()
    except Exception as e:
        logger.error(f"Error waiting for pending chat saves: {e}")

    await app.http_client.aclose()
    app.mongodb_client.close()
