"""
Test the chat completion request flow, both directly and over HTTP
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from gateway.api.deps import get_chat_gateway, get_current_user_optional
from gateway.core.exceptions import (
    AuthenticationMissing,
    BackendStreamError,
    RateLimiterUnavailable,
    RateLimitExceeded,
)
from gateway.main import app
from gateway.schemas.chat import ChatRequest
from gateway.schemas.user import CurrentUser
from gateway.services.rate_limit import RateLimitStore
from fakes import Clock, FakeChatStore, FakeInferenceClient, MODEL, make_access_token, make_gateway

HI = {"messages": [{"role": "user", "content": "Hi"}]}


class UnavailableRateLimitStore(RateLimitStore):
    async def increment_and_check(self, key, limit, window_ms, now):
        raise RateLimiterUnavailable()


def drain(response):
    async def run():
        return [chunk async for chunk in response.body_iterator]
    return run()


class TestChatGatewayHandle:

    def test_streams_completion_and_saves_chat(self):
        backend = FakeInferenceClient(["He", "llo!"])
        store = FakeChatStore()
        gateway = make_gateway(backend, store)

        async def run():
            response = await gateway.handle(CurrentUser(id="u1"), ChatRequest(**HI))
            chunks = await drain(response)
            await gateway.wait_for_pending()
            return response, chunks

        response, chunks = asyncio.run(run())

        assert response.status_code == 200
        assert response.media_type == "text/plain; charset=utf-8"
        assert chunks == [b"He", b"llo!"]
        assert backend.calls == [(MODEL, "<|prompter|>Hi<|endoftext|><|assistant|>", gateway.params)]

        record = store.hashes["chat:abc1234"]
        assert record["title"] == "Hi"
        assert record["messages"] == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"}
        ]
        assert "chat:abc1234" in store.sorted_sets["user:chat:u1"]

    def test_missing_user_is_rejected_before_any_work(self):
        backend = FakeInferenceClient(["x"])
        rate_limit_store = MagicMock(spec=RateLimitStore)
        rate_limit_store.increment_and_check = AsyncMock()
        gateway = make_gateway(backend, FakeChatStore(), rate_limit_store=rate_limit_store)

        with pytest.raises(AuthenticationMissing):
            asyncio.run(gateway.handle(None, ChatRequest(**HI)))

        rate_limit_store.increment_and_check.assert_not_called()
        assert backend.calls == []

    def test_rate_limited_user_gets_reset_time(self):
        backend = FakeInferenceClient(["x"])
        clock = Clock()
        gateway = make_gateway(backend, FakeChatStore(), clock=clock, limit=1)

        async def run():
            first = await gateway.handle(CurrentUser(id="u1"), ChatRequest(**HI))
            await drain(first)
            await gateway.handle(CurrentUser(id="u1"), ChatRequest(**HI))

        with pytest.raises(RateLimitExceeded) as exc_info:
            asyncio.run(run())

        assert exc_info.value.reset == clock.now + 24 * 60 * 60 * 1000
        assert len(backend.calls) == 1

    def test_limiter_outage_fails_closed_by_default(self):
        backend = FakeInferenceClient(["x"])
        gateway = make_gateway(backend, FakeChatStore(), rate_limit_store=UnavailableRateLimitStore())

        with pytest.raises(RateLimiterUnavailable):
            asyncio.run(gateway.handle(CurrentUser(id="u1"), ChatRequest(**HI)))

        assert backend.calls == []

    def test_limiter_outage_can_fail_open(self):
        backend = FakeInferenceClient(["ok"])
        gateway = make_gateway(
            backend, FakeChatStore(), rate_limit_store=UnavailableRateLimitStore(), fail_open=True
        )

        async def run():
            response = await gateway.handle(CurrentUser(id="u1"), ChatRequest(**HI))
            return await drain(response)

        assert asyncio.run(run()) == [b"ok"]

    def test_backend_failure_skips_persistence(self):
        backend = FakeInferenceClient(["Hel"], error=ConnectionResetError("reset"))
        store = FakeChatStore()
        gateway = make_gateway(backend, store)

        async def run():
            response = await gateway.handle(CurrentUser(id="u1"), ChatRequest(**HI))
            try:
                await drain(response)
            finally:
                await gateway.wait_for_pending()

        with pytest.raises(BackendStreamError):
            asyncio.run(run())

        assert store.hashes == {}
        assert store.sorted_sets == {}

    def test_persistence_failure_does_not_reach_caller(self):
        backend = FakeInferenceClient(["ok"])
        store = FakeChatStore(fail_index=True)
        gateway = make_gateway(backend, store)

        async def run():
            response = await gateway.handle(CurrentUser(id="u1"), ChatRequest(**HI))
            chunks = await drain(response)
            await gateway.wait_for_pending()
            return chunks

        assert asyncio.run(run()) == [b"ok"]
        assert "chat:abc1234" in store.hashes


class TestChatEndpoint:

    def post(self, gateway, json, user=None, headers=None, override_user=True):
        async def run():
            app.dependency_overrides[get_chat_gateway] = lambda: gateway
            if override_user:
                app.dependency_overrides[get_current_user_optional] = lambda: user
            try:
                transport = httpx.ASGITransport(app=app)
                async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                    response = await client.post("/api/chat", json=json, headers=headers or {})
                await gateway.wait_for_pending()
                return response
            finally:
                app.dependency_overrides.clear()

        return asyncio.run(run())

    def test_end_to_end_stream_and_save(self):
        backend = FakeInferenceClient(["He", "llo!"])
        store = FakeChatStore()
        gateway = make_gateway(backend, store)

        response = self.post(gateway, HI, user=CurrentUser(id="u1"))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Hello!"
        assert store.hashes["chat:abc1234"]["title"] == "Hi"
        assert store.hashes["chat:abc1234"]["messages"][-1] == {"role": "assistant", "content": "Hello!"}

    def test_unauthenticated_request(self):
        backend = FakeInferenceClient(["x"])
        store = FakeChatStore()

        response = self.post(make_gateway(backend, store), HI, user=None)

        assert response.status_code == 401
        assert response.text == "Unauthorized"
        assert backend.calls == []
        assert store.hashes == {}

    def test_bearer_token_identifies_user(self):
        backend = FakeInferenceClient(["ok"])
        store = FakeChatStore()
        token = make_access_token("u42")

        response = self.post(
            make_gateway(backend, store),
            HI,
            headers={"Authorization": f"Bearer {token}"},
            override_user=False
        )

        assert response.status_code == 200
        assert "user:chat:u42" in store.sorted_sets

    def test_invalid_token_is_unauthorized(self):
        backend = FakeInferenceClient(["ok"])

        response = self.post(
            make_gateway(backend, FakeChatStore()),
            HI,
            headers={"Authorization": "Bearer not-a-jwt"},
            override_user=False
        )

        assert response.status_code == 401
        assert backend.calls == []

    def test_rate_limited_request(self):
        backend = FakeInferenceClient(["x"])
        store = FakeChatStore()
        gateway = make_gateway(backend, store, limit=0)

        response = self.post(gateway, HI, user=CurrentUser(id="u1"))

        assert response.status_code == 200
        assert response.text.startswith("Your rate limit has been exceeded. You can chat again from ")
        assert response.text.endswith(" GMT")
        assert backend.calls == []
        assert store.hashes == {}

    def test_limiter_outage_returns_service_unavailable(self):
        backend = FakeInferenceClient(["x"])
        gateway = make_gateway(backend, FakeChatStore(), rate_limit_store=UnavailableRateLimitStore())

        response = self.post(gateway, HI, user=CurrentUser(id="u1"))

        assert response.status_code == 503
        assert backend.calls == []

    def test_empty_conversation_is_rejected(self):
        backend = FakeInferenceClient(["x"])
        rate_limit_store = MagicMock(spec=RateLimitStore)
        rate_limit_store.increment_and_check = AsyncMock()
        gateway = make_gateway(backend, FakeChatStore(), rate_limit_store=rate_limit_store)

        response = self.post(gateway, {"messages": []}, user=CurrentUser(id="u1"))

        assert response.status_code == 422
        rate_limit_store.increment_and_check.assert_not_called()
        assert backend.calls == []

    def test_unknown_role_is_rejected(self):
        backend = FakeInferenceClient(["x"])

        response = self.post(
            make_gateway(backend, FakeChatStore()),
            {"messages": [{"role": "tool", "content": "Hi"}]},
            user=CurrentUser(id="u1")
        )

        assert response.status_code == 422
        assert backend.calls == []


class TestClientDisconnect:
    """The client goes away after the first chunk of the streamed body"""

    def disconnect_after_first_chunk(self, gateway, stall_send):
        responses = []
        handle = gateway.handle

        async def recording_handle(user, request):
            response = await handle(user, request)
            responses.append(response)
            return response

        gateway.handle = recording_handle
        body = json.dumps(HI).encode()
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/api/chat",
            "raw_path": b"/api/chat",
            "root_path": "",
            "query_string": b"",
            "headers": [
                (b"host", b"test"),
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ],
            "client": ("127.0.0.1", 50000),
            "server": ("test", 80),
        }

        async def run():
            first_chunk_sent = asyncio.Event()
            request_read = False
            chunks = []

            async def receive():
                nonlocal request_read
                if not request_read:
                    request_read = True
                    return {"type": "http.request", "body": body, "more_body": False}
                await first_chunk_sent.wait()
                return {"type": "http.disconnect"}

            async def send(message):
                if message["type"] == "http.response.body" and message.get("body"):
                    chunks.append(message["body"])
                    first_chunk_sent.set()
                    if stall_send:
                        # Slow client: the write never finishes
                        await asyncio.Event().wait()

            app.dependency_overrides[get_chat_gateway] = lambda: gateway
            app.dependency_overrides[get_current_user_optional] = lambda: CurrentUser(id="u1")
            try:
                await asyncio.wait_for(app(scope, receive, send), timeout=5)
                await gateway.wait_for_pending()
            finally:
                app.dependency_overrides.clear()
            return chunks

        chunks = asyncio.run(run())
        return chunks, responses[0]

    def test_disconnect_during_write_releases_backend(self):
        backend = FakeInferenceClient(["Hel", "lo"])
        store = FakeChatStore()
        gateway = make_gateway(backend, store)

        chunks, response = self.disconnect_after_first_chunk(gateway, stall_send=True)

        assert chunks == [b"Hel"]
        assert backend.closed
        assert response.completion_stream.completion.cancelled()
        assert store.hashes == {}
        assert store.sorted_sets == {}

    def test_disconnect_while_waiting_on_backend_releases_backend(self):
        backend = FakeInferenceClient(["Hel"], hang=True)
        store = FakeChatStore()
        gateway = make_gateway(backend, store)

        chunks, response = self.disconnect_after_first_chunk(gateway, stall_send=False)

        assert chunks == [b"Hel"]
        assert backend.closed
        assert response.completion_stream.completion.cancelled()
        assert store.hashes == {}
