"""运行时装配与事件分发"""

import pytest

from group_stats.errors import StorageInitError
from group_stats.runtime import Runtime

from conftest import NOW, FakeSender, FixedClock, group_event, make_config, split_cut


@pytest.fixture
async def runtime(tmp_path):
    rt = Runtime(make_config(tmp_path), sender=FakeSender(), clock=FixedClock(), tokenizer_cut=split_cut)
    await rt.start()
    yield rt
    await rt.stop()


class TestRuntime:
    async def test_custom_prefix(self, runtime):
        runtime.config.update(command_prefix="/统计")
        assert await runtime.handle_event(group_event(1, text="/统计 run group_total")) == "群总消息数: 1"
        assert await runtime.handle_event(group_event(2, text="#stats run group_total")) is None

    async def test_plugin_disabled_ignores_everything(self, runtime):
        runtime.config.update(enabled=False)
        assert await runtime.handle_event(group_event(1, text="#stats")) is None
        assert await runtime.db.messages.count_rows("messages") == 0

    async def test_notice_returns_none(self, runtime):
        await runtime.handle_event(group_event(1))
        notice = {"post_type": "notice", "notice_type": "group_recall", "message_id": 1, "time": NOW}
        assert await runtime.handle_event(notice) is None
        assert (await runtime.db.messages.get_message("1"))["is_recall"] == 1

    async def test_persisted_settings_loaded_on_start(self, tmp_path):
        first = Runtime(make_config(tmp_path), sender=FakeSender(), clock=FixedClock())
        await first.start()
        await first.stats.set_stat_period(9)
        await first.stats.disable_feature("silent")
        await first.stop()

        second = Runtime(make_config(tmp_path), sender=FakeSender(), clock=FixedClock())
        await second.start()
        try:
            assert second.config.current.stat_period_days == 9
            assert second.config.current.feature_flags.silent is False
        finally:
            await second.stop()

    async def test_status(self, runtime):
        await runtime.handle_event(group_event(1))
        status = await runtime.status()
        assert status["collected"] == 1
        assert status["uptime_seconds"] == 0
        assert status["scheduler_running"] is False
        await runtime.stats.set_stat_period(5)
        assert (await runtime.status())["persisted_settings"]["stat_period_days"] == "5"

    async def test_storage_failure_propagates(self, tmp_path):
        rt = Runtime(make_config(tmp_path, database={"path": str(tmp_path)}), sender=FakeSender())
        with pytest.raises(StorageInitError):
            await rt.start()
