"""OneBot HTTP 发送器"""

import json

import httpx

from group_stats.config import ConfigStore
from group_stats.sender import OneBotSender


def make_sender(handler, **onebot):
    store = ConfigStore()
    store.replace({"onebot": {"api_url": "http://onebot.local/", **onebot}})
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OneBotSender(store, client=client)


class TestOneBotSender:
    async def test_success(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"status": "ok", "retcode": 0, "data": {"message_id": 1}})

        sender = make_sender(handler, access_token="tok")
        assert await sender.send_group_message("1001", "hi") is True
        req = seen[0]
        assert str(req.url) == "http://onebot.local/send_group_msg"
        assert req.headers["Authorization"] == "Bearer tok"
        assert json.loads(req.content) == {"group_id": "1001", "message": "hi"}

    async def test_private_message_endpoint(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"status": "ok"})

        sender = make_sender(handler)
        assert await sender.send_private_message("42", "hi") is True
        assert seen[0].url.path == "/send_private_msg"
        assert "Authorization" not in seen[0].headers

    async def test_failed_status(self):
        sender = make_sender(lambda r: httpx.Response(200, json={"status": "failed", "retcode": 100}))
        assert await sender.send_group_message("1001", "hi") is False

    async def test_http_error(self):
        sender = make_sender(lambda r: httpx.Response(500, text="oops"))
        assert await sender.send_group_message("1001", "hi") is False

    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sender = make_sender(handler)
        assert await sender.send_group_message("1001", "hi") is False

    async def test_not_configured(self):
        sender = OneBotSender(ConfigStore())
        assert await sender.send_group_message("1001", "hi") is False

    async def test_group_list(self):
        groups = [{"group_id": 1001, "group_name": "测试群", "member_count": 3, "max_member_count": 200}]
        sender = make_sender(lambda r: httpx.Response(200, json={"status": "ok", "data": groups}))
        assert await sender.get_group_list() == groups

    async def test_group_list_failure(self):
        sender = make_sender(lambda r: httpx.Response(502, text="bad gateway"))
        assert await sender.get_group_list() is None
