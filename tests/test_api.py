"""HTTP 接口：OneBot 上报 + 统计 API"""

import time

import pytest
from fastapi.testclient import TestClient

from group_stats.api import create_app
from group_stats.runtime import Runtime

from conftest import FakeSender, group_event, make_config, split_cut


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def client(tmp_path, sender):
    runtime = Runtime(make_config(tmp_path), sender=sender, tokenizer_cut=split_cut)
    with TestClient(create_app(runtime)) as c:
        yield c


def now():
    return int(time.time())


class TestOneBotWebhook:
    def test_message_ingested(self, client):
        assert client.post("/onebot/event", json=group_event(1, t=now())).json() == {}
        body = client.get("/api/stats/group/1001/total_messages").json()
        assert body == {"code": 0, "data": 1}

    def test_recall_notice(self, client):
        client.post("/onebot/event", json=group_event(1, t=now()))
        client.post("/onebot/event", json={"post_type": "notice", "notice_type": "group_recall",
                                           "group_id": 1001, "message_id": 1, "time": now()})
        assert client.get("/api/stats/group/1001/total_messages_without_recall").json()["data"] == 0

    def test_command_reply_sent(self, client, sender):
        client.post("/onebot/event", json=group_event(1, t=now(), text="hello"))
        client.post("/onebot/event", json=group_event(2, t=now(), text="#stats run group_total"))
        assert sender.group_messages == [("1001", "群总消息数: 2")]
        assert client.get("/api/status").json()["data"]["command_calls"] == 1

    def test_command_ignored_for_disabled_group(self, client, sender):
        client.post("/api/groups/1001/config", json={"enabled": False})
        client.post("/onebot/event", json=group_event(1, t=now(), text="#stats"))
        assert sender.group_messages == []

    def test_private_command_gets_hint(self, client, sender):
        client.post("/onebot/event", json={"post_type": "message", "message_type": "private",
                                           "user_id": 42, "time": now(), "raw_message": "#stats"})
        assert sender.private_messages == [("42", "统计命令仅支持在群内使用")]

    def test_garbage_payload_still_ok(self, client):
        resp = client.post("/onebot/event", content=b"not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 200
        assert client.post("/onebot/event", json=["list"]).json() == {}


class TestStatusAndConfig:
    def test_status(self, client):
        client.post("/onebot/event", json=group_event(1, t=now()))
        data = client.get("/api/status").json()["data"]
        assert data["db_connected"] is True
        assert data["collected"] == 1
        assert data["storage"]["total_messages"] == 1

    def test_config_hides_token(self, client):
        data = client.get("/api/config").json()["data"]
        assert "access_token" not in data["onebot"]
        assert data["command_prefix"] == "#stats"

    def test_config_update(self, client):
        assert client.post("/api/config", json={"stat_period_days": 7}).json()["code"] == 0
        assert client.get("/api/config").json()["data"]["stat_period_days"] == 7

        resp = client.post("/api/config", json={"database.path": "/tmp/x"})
        assert resp.status_code == 400
        assert resp.json()["code"] == -1

    def test_bulk_group_config(self, client):
        resp = client.post("/api/groups/bulk-config", json={"enabled": False, "groupIds": ["1", "2"]})
        assert resp.json()["code"] == 0
        groups = client.get("/api/config").json()["data"]["group_configs"]
        assert groups == {"1": {"enabled": False}, "2": {"enabled": False}}

    def test_config_rejects_invalid_value(self, client):
        resp = client.post("/api/config", json={"debug": True, "burst.sigma": "abc"})
        assert resp.status_code == 400
        assert resp.json()["code"] == -1
        assert "burst.sigma" in resp.json()["message"]
        data = client.get("/api/config").json()["data"]
        assert data["burst"]["sigma"] == 3
        assert data["debug"] is False

    def test_group_list(self, client, sender):
        sender.groups = [
            {"group_id": 1001, "group_name": "甲", "member_count": 3, "max_member_count": 200},
            {"group_id": 2002, "group_name": "乙", "member_count": 5, "max_member_count": 500},
        ]
        client.post("/api/groups/2002/config", json={"enabled": False})
        body = client.get("/api/groups").json()
        assert body["code"] == 0
        assert [(g["group_id"], g["group_name"], g["enabled"]) for g in body["data"]] == [
            (1001, "甲", True),
            (2002, "乙", False),
        ]

    def test_group_list_unavailable(self, client):
        assert client.get("/api/groups").json()["code"] == -1


class TestConfigPersistence:
    def boot(self, tmp_path):
        runtime = Runtime(make_config(tmp_path), sender=FakeSender(), tokenizer_cut=split_cut)
        return TestClient(create_app(runtime))

    def test_changes_survive_restart(self, tmp_path):
        with self.boot(tmp_path) as c:
            assert c.post("/api/stats/disable", params={"feature": "keyword"}).json()["code"] == 0
            patch = {"feature_flags.keyword": True, "stat_period_days": 9, "burst.sigma": 2.5}
            assert c.post("/api/config", json=patch).json()["code"] == 0
            assert c.post("/api/groups/1001/config", json={"enabled": False}).json()["code"] == 0
            c.post("/api/groups/bulk-config", json={"enabled": False, "groupIds": ["2002"]})

        with self.boot(tmp_path) as c:
            data = c.get("/api/config").json()["data"]

        assert data["feature_flags"]["keyword"] is True
        assert data["stat_period_days"] == 9
        assert data["burst"]["sigma"] == 2.5
        assert data["group_configs"] == {"1001": {"enabled": False}, "2002": {"enabled": False}}

    def test_group_reenabled_after_restart(self, tmp_path):
        with self.boot(tmp_path) as c:
            c.post("/api/groups/1001/config", json={"enabled": False})
        with self.boot(tmp_path) as c:
            c.post("/api/groups/1001/config", json={"enabled": True})
        with self.boot(tmp_path) as c:
            assert c.get("/api/config").json()["data"]["group_configs"]["1001"] == {"enabled": True}


class TestStatsRoutes:
    def test_query_error_envelope(self, client):
        body = client.get("/api/stats/group/1001/total_messages", params={"start": now() + 100}).json()
        assert body["code"] == -1
        assert "message" in body

    def test_top_users_and_heatmap(self, client):
        t = now()
        for i, user in enumerate(["a", "b", "a"]):
            client.post("/onebot/event", json=group_event(i, user_id=user, t=t))
        top = client.get("/api/stats/group/1001/top_users", params={"limit": 1}).json()["data"]
        assert top == [{"user_id": "a", "count": 2}]
        heatmap = client.get("/api/stats/group/1001/heatmap").json()["data"]
        assert sum(heatmap["hourly"]) == 3

    def test_user_routes(self, client):
        client.post("/onebot/event", json=group_event(1, user_id="u1", t=now(), text="@123456 苹果"))
        base = "/api/stats/group/1001/user/u1"
        assert client.get(f"{base}/total_messages").json()["data"] == 1
        assert client.get(f"{base}/at_stats").json()["data"] == [{"target_user_id": "123456", "count": 1}]
        assert client.get(f"{base}/keywords").json()["data"] == [{"keyword": "@123456", "count": 1},
                                                                {"keyword": "苹果", "count": 1}]
        assert client.get(f"{base}/active_days").json()["data"] == 1

    def test_anomaly_routes(self, client):
        assert client.get("/api/stats/group/1001/burst_events").json() == {"code": 0, "data": []}
        silent = client.get("/api/stats/group/1001/silent_events").json()["data"]
        assert silent[0]["message_count"] == 0

    def test_maintenance_routes(self, client):
        assert client.post("/api/stats/set_period", params={"days": 0}).json()["data"] == {"days": 1}
        assert client.post("/api/stats/disable", params={"feature": "keyword"}).json()["data"] == {
            "feature": "keyword", "enabled": False,
        }
        assert client.post("/api/stats/clean", params={"days": 7}).json()["data"] == {"deleted": 0}

    def test_schedule_routes(self, client):
        base = "/api/stats/group/1001/schedules"
        job = client.post(base, json={"hour": 8, "minute": 30, "feature": "group_total"}).json()["data"]
        assert job["id"] == 1
        assert client.get(base).json()["data"] == [job]

        bad = client.post(base, json={"hour": 25, "minute": 0, "feature": "x"}).json()
        assert bad["code"] == -1

        paused = client.post(f"{base}/enable", json={"id": job["id"], "enabled": False}).json()
        assert paused["data"] == {"updated": True}
        assert client.get(base).json()["data"][0]["enabled"] is False
        other = client.post("/api/stats/group/2002/schedules/enable", json={"id": job["id"], "enabled": True}).json()
        assert other["data"] == {"updated": False}

        assert client.post(f"{base}/remove", json={"id": job["id"]}).json()["data"] == {"removed": True}
        assert client.get(base).json()["data"] == []
