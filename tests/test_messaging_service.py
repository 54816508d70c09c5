import json

import httpx
import pytest

from catatkas.schemas.webhook import Reply, ReplyButton
from catatkas.services.messaging_service import MessagingClient


def make_client(handler, token="secret"):
    return MessagingClient("http://gateway.test/send", token, transport=httpx.MockTransport(handler))


class TestMessagingClient:
    @pytest.mark.asyncio
    async def test_posts_text_and_buttons(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"ok": True})

        reply = Reply(text="Pilih jenis transaksi:", buttons=[ReplyButton(id="txn_type_income", title="Penjualan")])
        sent = await make_client(handler).send("conv-1", reply)

        assert sent is True
        assert captured["body"] == {
            "conversation_id": "conv-1",
            "text": "Pilih jenis transaksi:",
            "buttons": [{"id": "txn_type_income", "title": "Penjualan"}],
        }
        assert captured["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_gateway_error_returns_false(self):
        sent = await make_client(lambda request: httpx.Response(500, text="down")).send("conv-1", Reply(text="hi"))
        assert sent is False

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await make_client(handler).send("conv-1", Reply(text="hi")) is False

    @pytest.mark.asyncio
    async def test_empty_text_is_not_sent(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        assert await make_client(handler).send("conv-1", Reply(text="")) is False
        assert calls == []
