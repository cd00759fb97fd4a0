"""
Test cases for the delivery dispatcher.
"""

import json

import httpx
import pytest

from scheduler.dispatcher import DeliveryDispatcher
from utilities.logger import setup_logging


def make_dispatcher(handler) -> DeliveryDispatcher:
    return DeliveryDispatcher(
        "123:abc",
        "42",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        api_base="https://telegram.example/",
    )


class TestDeliveryDispatcher:
    """Test cases for webhook delivery."""

    @pytest.mark.asyncio
    async def test_posts_plain_text(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        async with make_dispatcher(handler) as dispatcher:
            assert await dispatcher.deliver("hello") is True

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://telegram.example/bot123:abc/sendMessage"
        body = json.loads(request.content)
        assert body["chat_id"] == "42"
        assert body["text"] == "hello"
        assert "parse_mode" not in body

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 429, 500])
    async def test_non_success_status(self, status):
        async with make_dispatcher(lambda request: httpx.Response(status)) as dispatcher:
            assert await dispatcher.deliver("hello") is False

    @pytest.mark.asyncio
    async def test_transport_error_is_absorbed(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        async with make_dispatcher(handler) as dispatcher:
            assert await dispatcher.deliver("hello") is False

    def test_configured(self):
        assert DeliveryDispatcher("t", "c").configured
        assert not DeliveryDispatcher("", "c").configured
        assert not DeliveryDispatcher("t", "").configured

    def test_from_config(self, test_config):
        dispatcher = DeliveryDispatcher.from_config(test_config)

        assert dispatcher.chat_id == "42"
        assert dispatcher.api_base == "https://telegram.example"
        assert dispatcher.timeout == 10.0

    @pytest.mark.asyncio
    async def test_bot_token_not_logged(self, caplog):
        setup_logging(log_level="INFO", log_format="json", log_file=None)

        async with make_dispatcher(lambda request: httpx.Response(200, json={"ok": True})) as dispatcher:
            assert await dispatcher.deliver("hello") is True

        assert all("123:abc" not in record.getMessage() for record in caplog.records)
        assert "123:abc" not in caplog.text

    @pytest.mark.asyncio
    async def test_bot_token_scrubbed_from_transport_errors(self, caplog):
        def handler(request):
            raise httpx.ConnectError(f"cannot reach {request.url}", request=request)

        async with make_dispatcher(handler) as dispatcher:
            assert await dispatcher.deliver("hello") is False

        assert "123:abc" not in caplog.text
