"""统计查询层"""

import pytest

from group_stats.errors import QueryError
from group_stats.stats import TimeRange, resolve_time_range

from conftest import DAY, NOW, insert


class TestResolveTimeRange:
    def test_defaults(self):
        assert resolve_time_range(None, 30, NOW) == (NOW - 30 * DAY, NOW)

    def test_start_wins_over_days(self):
        assert resolve_time_range(TimeRange(start=100, end=200, days=5), 30, NOW) == (100, 200)

    def test_days_clamped_to_one(self):
        assert resolve_time_range(TimeRange(days=0), 30, NOW) == (NOW - DAY, NOW)

    def test_explicit_end(self):
        assert resolve_time_range({"end": NOW - DAY, "days": 2}, 30, NOW) == (NOW - 3 * DAY, NOW - DAY)

    def test_inverted_range(self):
        with pytest.raises(QueryError):
            resolve_time_range(TimeRange(start=NOW + 10), 30, NOW)


class TestCounts:
    async def test_recall_exclusion(self, stats, db):
        await insert(db, "a", user_id="u1")
        await insert(db, "b", user_id="u1", recalled=True)
        await insert(db, "c", user_id="u2")

        assert await stats.get_group_total_messages("1001") == 3
        assert await stats.get_group_total_messages_without_recall("1001") == 2
        assert await stats.get_user_total_messages("1001", "u1") == 2
        assert await stats.get_user_total_messages_without_recall("1001", "u1") == 1

    async def test_range_is_inclusive(self, stats, db):
        await insert(db, "edge-start", t=NOW - 100)
        await insert(db, "edge-end", t=NOW)
        await insert(db, "outside", t=NOW - 101)
        assert await stats.get_group_total_messages("1001", TimeRange(start=NOW - 100, end=NOW)) == 2

    async def test_other_groups_ignored(self, stats, db):
        await insert(db, "a", group_id="1001")
        await insert(db, "b", group_id="2002")
        assert await stats.get_group_total_messages("1001") == 1

    async def test_top_users_order_and_ties(self, stats, db):
        await insert(db, "1", user_id="late", t=NOW - 50)
        await insert(db, "2", user_id="early", t=NOW - 40)
        await insert(db, "3", user_id="busy", t=NOW - 30)
        await insert(db, "4", user_id="busy", t=NOW - 20)
        await insert(db, "5", user_id="busy", t=NOW - 10, recalled=True)

        top = await stats.get_group_top_users("1001", 10)
        assert top[0] == {"user_id": "busy", "count": 3}
        assert [r["user_id"] for r in top[1:]] == ["late", "early"]

        top = await stats.get_group_top_users_without_recall("1001", 1)
        assert top == [{"user_id": "busy", "count": 2}]


class TestDistributions:
    async def test_heatmap_uses_timezone_offset(self, stats, db):
        await insert(db, "a", t=NOW)
        heatmap = await stats.get_group_heatmap("1001")
        assert heatmap["hourly"][6] == 1
        assert heatmap["weekly"][2] == 1
        assert sum(heatmap["hourly"]) == sum(heatmap["weekly"]) == 1

    async def test_heatmap_without_recall(self, stats, db):
        await insert(db, "a", t=NOW, recalled=True)
        heatmap = await stats.get_group_heatmap_without_recall("1001")
        assert sum(heatmap["hourly"]) == 0

    async def test_daily_and_hourly(self, stats, db):
        await insert(db, "a", t=NOW)
        await insert(db, "b", t=NOW - DAY)
        await insert(db, "c", t=NOW - DAY + 60, recalled=True)

        assert await stats.get_group_daily_messages("1001") == [
            {"day": "2023-11-14", "count": 2},
            {"day": "2023-11-15", "count": 1},
        ]
        assert await stats.get_group_daily_messages_without_recall("1001") == [
            {"day": "2023-11-14", "count": 1},
            {"day": "2023-11-15", "count": 1},
        ]
        assert await stats.get_group_hourly_messages_without_recall("1001") == [{"hour": 6, "count": 2}]
        assert await stats.get_user_hourly_activity("1001", "u1") == [{"hour": 6, "count": 3}]

    async def test_message_types(self, stats, db):
        await insert(db, "a", message_type="text")
        await insert(db, "b", message_type="text")
        await insert(db, "c", message_type="image", recalled=True)
        assert await stats.get_group_message_types("1001") == [
            {"message_type": "text", "count": 2},
            {"message_type": "image", "count": 1},
        ]
        assert await stats.get_group_message_types_without_recall("1001") == [{"message_type": "text", "count": 2}]
        assert await stats.get_user_message_types_without_recall("1001", "u2") == []

    async def test_active_days(self, stats, db):
        await insert(db, "a", t=NOW)
        await insert(db, "b", t=NOW - 3600)
        await insert(db, "c", t=NOW - 2 * DAY)
        assert await stats.get_user_active_days("1001", "u1") == 2


class TestContent:
    async def test_keyword_stats(self, stats, db):
        await insert(db, "a", text="苹果 香蕉 苹果")
        await insert(db, "b", text="香蕉 苹果", recalled=True)
        await insert(db, "c", text="苹果 图片", message_type="image")

        assert await stats.get_group_keyword_stats("1001") == [
            {"keyword": "苹果", "count": 3},
            {"keyword": "香蕉", "count": 2},
        ]
        assert await stats.get_group_keyword_stats_without_recall("1001", limit=1) == [
            {"keyword": "苹果", "count": 2},
        ]

    async def test_keyword_flag_off(self, stats, store, db):
        await insert(db, "a", text="苹果 香蕉")
        store.set_feature_flag("keyword", False)
        assert await stats.get_group_keyword_stats("1001") == []
        assert await stats.get_user_keyword_stats("1001", "u1") == []

    async def test_user_keyword_stats(self, stats, db):
        await insert(db, "a", user_id="u1", text="苹果")
        await insert(db, "b", user_id="u2", text="香蕉")
        assert await stats.get_user_keyword_stats("1001", "u2") == [{"keyword": "香蕉", "count": 1}]

    async def test_user_content_flag(self, stats, store, db):
        await insert(db, "a", text="苹果 @123456")
        store.set_feature_flag("user_content", False)
        assert await stats.get_user_keyword_stats("1001", "u1") == []
        assert await stats.get_user_at_stats("1001", "u1") == []
        assert await stats.get_group_keyword_stats("1001") == [
            {"keyword": "苹果", "count": 1},
            {"keyword": "@123456", "count": 1},
        ]

    async def test_at_stats(self, stats, db):
        await insert(db, "a", text="@123456 hi @7654321")
        await insert(db, "b", text="[CQ:at,qq=1] @123456", message_type="image")
        await insert(db, "c", user_id="u2", text="@7654321")
        assert await stats.get_user_at_stats("1001", "u1") == [
            {"target_user_id": "123456", "count": 2},
            {"target_user_id": "7654321", "count": 1},
        ]


class TestUsers:
    async def test_active_users_exclude_recalls(self, stats, db):
        await insert(db, "a", user_id="u1", t=NOW - DAY)
        await insert(db, "b", user_id="u2", t=NOW - DAY, recalled=True)
        await insert(db, "c", user_id="u3", t=NOW - 10 * DAY)
        assert await stats.get_group_active_users("1001", 7) == [{"user_id": "u1", "count": 1}]

    async def test_inactive_users(self, stats, db):
        await insert(db, "a", user_id="gone", t=NOW - 10 * DAY)
        await insert(db, "b", user_id="stays", t=NOW - 10 * DAY)
        await insert(db, "c", user_id="stays", t=NOW - DAY)
        await insert(db, "d", user_id="ancient", t=NOW - 60 * DAY)
        assert await stats.get_group_inactive_users("1001", 7) == [{"user_id": "gone"}]


class TestMaintenance:
    async def test_clean_data_end_to_end(self, stats, db):
        await insert(db, "old", t=NOW - 8 * DAY)
        await insert(db, "recent", t=NOW - 6 * DAY)
        await db.messages.insert_member_event("1001", "u1", "group_increase", NOW - 8 * DAY)
        await db.messages.insert_file_event("1001", "u1", "f", "a", 1, NOW - 8 * DAY)

        assert await stats.clean_data(7) == 1
        assert await db.messages.count_rows("messages") == 1
        assert await db.messages.count_rows("group_member_events") == 0
        assert await db.messages.count_rows("group_file_events") == 0

    async def test_clean_data_minimum_one_day(self, stats, db):
        await insert(db, "a", t=NOW - 2 * 3600)
        await insert(db, "b", t=NOW - 2 * DAY)
        assert await stats.clean_data(0) == 1

    async def test_set_stat_period(self, stats, store, db):
        assert await stats.set_stat_period(0) == 1
        assert store.current.stat_period_days == 1
        assert await db.settings.get("stat_period_days") == "1"

    async def test_feature_toggles(self, stats, store, db):
        assert await stats.disable_feature("heatmap") is True
        assert store.current.feature_flags.heatmap is False
        assert await stats.enable_feature("unknown_flag") is False
        assert await db.settings.get_features() == {"heatmap": False, "unknown_flag": True}

    async def test_load_persisted_settings(self, stats, store, db):
        await db.settings.set("stat_period_days", "14")
        await db.settings.set_feature("burst", False)
        await stats.load_persisted_settings()
        assert store.current.stat_period_days == 14
        assert store.current.feature_flags.burst is False

    async def test_schedule_validation(self, stats):
        with pytest.raises(QueryError):
            await stats.upsert_group_schedule("1001", 24, 0, "group_total")
        job = await stats.upsert_group_schedule("1001", 23, 59, "group_total")
        assert await stats.list_group_schedules("1001") == [job]
        assert await stats.remove_group_schedule("1001", job["id"]) is True

    async def test_apply_config_persists(self, stats, store, db):
        await stats.apply_config({"stat_period_days": 0, "feature_flags.heatmap": False, "silent.quantile": 0.5})
        assert store.current.silent.quantile == 0.5
        assert await db.settings.get("stat_period_days") == "1"
        assert (await db.settings.get_features())["heatmap"] is False
        assert await db.settings.get_overrides() == {"silent.quantile": 0.5}

    async def test_apply_config_rejected_writes_nothing(self, stats, store, db):
        with pytest.raises(ValueError):
            await stats.apply_config({"burst.sigma": "abc", "debug": True})
        assert await db.settings.get_overrides() == {}
        assert store.current.debug is False

    async def test_stale_override_skipped_on_load(self, stats, store, db):
        await db.settings.set_override("burst.sigma", "abc")
        await db.settings.set_override("keyword.min_word_length", 4)
        await db.settings.set_group_enabled("1001", False)
        await stats.load_persisted_settings()
        assert store.current.burst.sigma == 3
        assert store.current.keyword.min_word_length == 4
        assert store.is_group_enabled("1001") is False
