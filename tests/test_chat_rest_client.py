"""Tests for the REST client against a local aiohttp backend."""
import base64

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from krishi_chat.api import ChatRestClient
from krishi_chat.chat_config import ChatHubConfig
from krishi_chat.chat_errors import ChatRestError, HistoryFetchFailure, ListPollFailure, MetadataFetchFailure
from krishi_chat.chat_models import DisconnectRequest

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def build_backend(state: dict) -> web.Application:
    """Minimal marketplace backend with the chat endpoints."""

    async def history(request: web.Request) -> web.Response:
        state["auth"].append(request.headers.get("Authorization"))
        if request.match_info["counterpart_id"] == "ERR":
            return web.Response(status=500)
        return web.json_response({"data": [{"message": "hi", "senderId": "C1"}]})

    async def customers(request: web.Request) -> web.Response:
        status = state.get("customers_status", 200)
        if status != 200:
            return web.Response(status=status)
        return web.json_response(["B2", "B1"])

    async def user_name(request: web.Request) -> web.Response:
        user_id = request.match_info["user_id"]
        if user_id == "B1":
            return web.Response(text='"Sita Devi"', content_type="text/plain")
        if user_id == "B2":
            return web.json_response({"success": True, "data": "Ram"})
        return web.Response(status=500)

    async def user_image(request: web.Request) -> web.Response:
        user_id = request.match_info["user_id"]
        if user_id == "B1":
            return web.Response(body=PNG_BYTES, content_type="image/png")
        if user_id == "B2":
            return web.Response(text="https://cdn.test/b2.png", content_type="text/plain")
        if user_id == "B3":
            return web.Response(text="not found", content_type="text/plain")
        return web.Response(status=404)

    async def mark_offline(request: web.Request) -> web.Response:
        state["disconnects"].append(await request.json())
        return web.Response(status=state.get("disconnect_status", 200))

    async def farmer_for_product(request: web.Request) -> web.Response:
        product_id = request.match_info["product_id"]
        if product_id == "P1":
            return web.json_response({"farmerId": "F9"})
        if product_id == "P2":
            return web.Response(text="", content_type="text/plain")
        return web.Response(status=404)

    app = web.Application()
    app.router.add_get("/api/Chat/getChatHistory/{counterpart_id}", history)
    app.router.add_get("/api/Chat/getMyCustomersForChat", customers)
    app.router.add_get("/api/User/getUserNameById/{user_id}", user_name)
    app.router.add_get("/api/User/getUserImageById/{user_id}", user_image)
    app.router.add_post("/api/Chat/markOffline", mark_offline)
    app.router.add_get("/api/Chat/getFarmerIdByProductId/{product_id}", farmer_for_product)
    return app


@pytest_asyncio.fixture
async def backend():
    state = {"auth": [], "disconnects": []}
    server = TestServer(build_backend(state))
    await server.start_server()
    try:
        yield server, state
    finally:
        await server.close()


@pytest_asyncio.fixture
async def client(backend):
    server, _ = backend
    config = ChatHubConfig(api_base=str(server.make_url("")))
    rest = ChatRestClient(config, lambda: "token-f1")
    try:
        yield rest
    finally:
        await rest.close()


def disconnect_request(**overrides) -> DisconnectRequest:
    values = dict(user_id="F1", connection_id="conn-1", session_id="session-1", reason="beforeunload", timestamp=1)
    values.update(overrides)
    return DisconnectRequest(**values)


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_unwrapped_and_authorized(self, client, backend):
        records = await client.get_history("C1")
        assert records == [{"message": "hi", "senderId": "C1"}]
        assert backend[1]["auth"] == ["Bearer token-f1"]

    @pytest.mark.asyncio
    async def test_history_error_status(self, client):
        with pytest.raises(HistoryFetchFailure) as exc_info:
            await client.get_history("ERR")
        assert exc_info.value.status == 500


class TestCounterparts:
    @pytest.mark.asyncio
    async def test_list(self, client):
        assert await client.get_counterparts() == ["B2", "B1"]

    @pytest.mark.asyncio
    async def test_not_found_means_empty(self, client, backend):
        backend[1]["customers_status"] = 404
        assert await client.get_counterparts() == []

    @pytest.mark.asyncio
    async def test_other_error_status_fails(self, client, backend):
        backend[1]["customers_status"] = 503
        with pytest.raises(ListPollFailure, match=r"Failed \(503\)"):
            await client.get_counterparts()

    @pytest.mark.asyncio
    async def test_farmer_for_product(self, client):
        assert await client.get_counterpart_for_product("P1") == "F9"

    @pytest.mark.asyncio
    async def test_farmer_offline(self, client):
        with pytest.raises(ChatRestError, match="Farmer offline"):
            await client.get_counterpart_for_product("P2")

    @pytest.mark.asyncio
    async def test_unknown_product(self, client):
        with pytest.raises(ChatRestError, match="Cannot get farmer id"):
            await client.get_counterpart_for_product("P404")


class TestMetadata:
    @pytest.mark.asyncio
    async def test_quoted_plain_text_name(self, client):
        assert await client.get_user_name("B1") == "Sita Devi"

    @pytest.mark.asyncio
    async def test_enveloped_json_name(self, client):
        assert await client.get_user_name("B2") == "Ram"

    @pytest.mark.asyncio
    async def test_name_error(self, client):
        with pytest.raises(MetadataFetchFailure):
            await client.get_user_name("B3")

    @pytest.mark.asyncio
    async def test_image_body_becomes_data_uri(self, client):
        avatar = await client.get_user_avatar("B1")
        assert avatar == "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")

    @pytest.mark.asyncio
    async def test_url_avatar(self, client):
        assert await client.get_user_avatar("B2") == "https://cdn.test/b2.png"

    @pytest.mark.asyncio
    async def test_unusable_avatar_text(self, client):
        assert await client.get_user_avatar("B3") is None


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_post_uses_camel_case_body(self, client, backend):
        await client.post_disconnect(disconnect_request(replacement_connection_id="conn-2"))
        assert backend[1]["disconnects"] == [{
            "userId": "F1",
            "connectionId": "conn-1",
            "sessionId": "session-1",
            "reason": "beforeunload",
            "timestamp": 1,
            "replacementConnectionId": "conn-2",
        }]

    @pytest.mark.asyncio
    async def test_rejected_post_raises(self, client, backend):
        backend[1]["disconnect_status"] = 401
        with pytest.raises(ChatRestError) as exc_info:
            await client.post_disconnect(disconnect_request())
        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_notify_never_raises(self, client, backend):
        backend[1]["disconnect_status"] = 500
        task = client.notify_disconnect(disconnect_request())
        assert await task is False
        await client.drain()
        assert len(backend[1]["disconnects"]) == 1


@pytest.mark.asyncio
async def test_unreachable_backend_raises_typed_error():
    config = ChatHubConfig(api_base="http://127.0.0.1:9", request_timeout=2)
    rest = ChatRestClient(config, lambda: None)
    try:
        with pytest.raises(HistoryFetchFailure):
            await rest.get_history("C1")
    finally:
        await rest.close()
