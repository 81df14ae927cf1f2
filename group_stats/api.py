"""
HTTP 接口 — FastAPI
- /onebot/event: OneBot v11 HTTP 上报入口
- /api/status, /api/config, /api/groups/...: 运行状态与配置
- /api/stats/...: 统计查询，统一返回 {code, data} 或 {code: -1, message}
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .runtime import Runtime
from .stats import TimeRange

logger = logging.getLogger("group-stats.api")


# ─── Pydantic 模型 ───
class GroupConfigRequest(BaseModel):
    enabled: bool


class BulkConfigRequest(BaseModel):
    enabled: bool
    groupIds: List[str]


class ScheduleRequest(BaseModel):
    hour: int = 0
    minute: int = 0
    feature: str = ""


class ScheduleRemoveRequest(BaseModel):
    id: int = 0


class ScheduleToggleRequest(BaseModel):
    id: int = 0
    enabled: bool = True


async def safe_route(handler: Callable[[], Awaitable[Any]]) -> Dict[str, Any]:
    """执行查询并包装为 {code, data}；任何异常都转为 {code: -1, message}"""
    try:
        return {"code": 0, "data": await handler()}
    except Exception as e:
        logger.warning(f"⚠️ 接口调用失败: {type(e).__name__}: {e}")
        return {"code": -1, "message": str(e)}


def _range(start: Optional[int], end: Optional[int], days: Optional[float]) -> TimeRange:
    return TimeRange(start=start, end=end, days=days)


def _limit(value: Optional[int], fallback: int) -> int:
    return max(1, value) if value else fallback


def create_app(runtime: Runtime, manage_lifecycle: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await runtime.start()
        logger.info("🌐 统计 API 已启动")
        yield
        if manage_lifecycle:
            await runtime.stop()

    app = FastAPI(title="Group Stats", version=__version__, lifespan=lifespan)
    stats = runtime.stats
    base = "/api/stats"

    # ═══════════════════════════════════════════
    # OneBot 上报
    # ═══════════════════════════════════════════

    @app.post("/onebot/event")
    async def onebot_event(request: Request):
        try:
            raw = await request.json()
        except ValueError:
            logger.warning("⚠️ 收到无法解析的上报内容")
            return {}
        try:
            await runtime.handle_event(raw)
        except Exception as e:
            # 上报方收到非 2xx 会重试，这里一律返回成功
            logger.error(f"❌ 处理上报事件异常: {e}", exc_info=True)
        return {}

    # ═══════════════════════════════════════════
    # 状态与配置
    # ═══════════════════════════════════════════

    @app.get("/api/status")
    async def api_status():
        return await safe_route(runtime.status)

    @app.get("/api/config")
    async def api_get_config():
        return {"code": 0, "data": runtime.config.current.model_dump(exclude={"onebot": {"access_token"}})}

    @app.post("/api/config")
    async def api_set_config(body: Dict[str, Any] = Body(default={})):
        if not body:
            return JSONResponse(status_code=400, content={"code": -1, "message": "请求体为空"})
        try:
            await stats.apply_config(body)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"code": -1, "message": str(e)})
        return {"code": 0, "message": "ok"}

    @app.get("/api/groups")
    async def api_groups():
        return await safe_route(runtime.list_groups)

    @app.post("/api/groups/{group_id}/config")
    async def api_group_config(group_id: str, body: GroupConfigRequest):
        await stats.set_group_enabled(group_id, body.enabled)
        return {"code": 0, "message": "ok"}

    @app.post("/api/groups/bulk-config")
    async def api_bulk_config(body: BulkConfigRequest):
        for gid in body.groupIds:
            await stats.set_group_enabled(str(gid), body.enabled)
        return {"code": 0, "message": "ok"}

    # ═══════════════════════════════════════════
    # 统计查询
    # ═══════════════════════════════════════════

    @app.get(base + "/group/{group_id}/total_messages")
    async def total_messages(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                             days: Optional[float] = None):
        return await safe_route(lambda: stats.get_group_total_messages(group_id, _range(start, end, days)))

    @app.get(base + "/group/{group_id}/total_messages_without_recall")
    async def total_messages_without_recall(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                                            days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_group_total_messages_without_recall(group_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/user/{user_id}/total_messages")
    async def user_total_messages(group_id: str, user_id: str, start: Optional[int] = None,
                                  end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_user_total_messages(group_id, user_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/user/{user_id}/total_messages_without_recall")
    async def user_total_messages_without_recall(group_id: str, user_id: str, start: Optional[int] = None,
                                                 end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_user_total_messages_without_recall(group_id, user_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/top_users")
    async def top_users(group_id: str, limit: Optional[int] = None, start: Optional[int] = None,
                        end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_group_top_users(group_id, _limit(limit, 10), _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/top_users_without_recall")
    async def top_users_without_recall(group_id: str, limit: Optional[int] = None, start: Optional[int] = None,
                                       end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_group_top_users_without_recall(group_id, _limit(limit, 10), _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/heatmap")
    async def heatmap(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                      days: Optional[float] = None):
        return await safe_route(lambda: stats.get_group_heatmap(group_id, _range(start, end, days)))

    @app.get(base + "/group/{group_id}/heatmap_without_recall")
    async def heatmap_without_recall(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                                     days: Optional[float] = None):
        return await safe_route(lambda: stats.get_group_heatmap_without_recall(group_id, _range(start, end, days)))

    @app.get(base + "/group/{group_id}/keywords")
    async def keywords(group_id: str, limit: Optional[int] = None, start: Optional[int] = None,
                       end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_group_keyword_stats(group_id, _limit(limit, 50), _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/keywords_without_recall")
    async def keywords_without_recall(group_id: str, limit: Optional[int] = None, start: Optional[int] = None,
                                      end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_group_keyword_stats_without_recall(group_id, _limit(limit, 50), _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/message_types")
    async def message_types(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                            days: Optional[float] = None):
        return await safe_route(lambda: stats.get_group_message_types(group_id, _range(start, end, days)))

    @app.get(base + "/group/{group_id}/message_types_without_recall")
    async def message_types_without_recall(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                                           days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_group_message_types_without_recall(group_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/user/{user_id}/message_types")
    async def user_message_types(group_id: str, user_id: str, start: Optional[int] = None,
                                 end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_user_message_types(group_id, user_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/user/{user_id}/message_types_without_recall")
    async def user_message_types_without_recall(group_id: str, user_id: str, start: Optional[int] = None,
                                                end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_user_message_types_without_recall(group_id, user_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/daily_messages")
    async def daily_messages(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                             days: Optional[float] = None):
        return await safe_route(lambda: stats.get_group_daily_messages(group_id, _range(start, end, days)))

    @app.get(base + "/group/{group_id}/daily_messages_without_recall")
    async def daily_messages_without_recall(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                                            days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_group_daily_messages_without_recall(group_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/hourly_messages")
    async def hourly_messages(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                              days: Optional[float] = None):
        return await safe_route(lambda: stats.get_group_hourly_messages(group_id, _range(start, end, days)))

    @app.get(base + "/group/{group_id}/hourly_messages_without_recall")
    async def hourly_messages_without_recall(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                                             days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_group_hourly_messages_without_recall(group_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/user/{user_id}/hourly_activity")
    async def user_hourly_activity(group_id: str, user_id: str, start: Optional[int] = None,
                                   end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_user_hourly_activity(group_id, user_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/user/{user_id}/hourly_activity_without_recall")
    async def user_hourly_activity_without_recall(group_id: str, user_id: str, start: Optional[int] = None,
                                                  end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_user_hourly_activity_without_recall(group_id, user_id, _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/user/{user_id}/active_days")
    async def user_active_days(group_id: str, user_id: str, start: Optional[int] = None,
                               end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(lambda: stats.get_user_active_days(group_id, user_id, _range(start, end, days)))

    @app.get(base + "/group/{group_id}/user/{user_id}/keywords")
    async def user_keywords(group_id: str, user_id: str, limit: Optional[int] = None, start: Optional[int] = None,
                            end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(
            lambda: stats.get_user_keyword_stats(group_id, user_id, _limit(limit, 50), _range(start, end, days))
        )

    @app.get(base + "/group/{group_id}/user/{user_id}/at_stats")
    async def user_at_stats(group_id: str, user_id: str, start: Optional[int] = None,
                            end: Optional[int] = None, days: Optional[float] = None):
        return await safe_route(lambda: stats.get_user_at_stats(group_id, user_id, _range(start, end, days)))

    @app.get(base + "/group/{group_id}/burst_events")
    async def burst_events(group_id: str, start: Optional[int] = None, end: Optional[int] = None,
                           days: Optional[float] = None):
        rng = None if start is None and end is None and days is None else _range(start, end, days)
        return await safe_route(lambda: stats.get_group_burst_events(group_id, rng))

    @app.get(base + "/group/{group_id}/silent_events")
    async def silent_events(group_id: str):
        return await safe_route(lambda: stats.get_group_silent_events(group_id))

    @app.get(base + "/group/{group_id}/active_users")
    async def active_users(group_id: str, days: float = Query(default=7)):
        return await safe_route(lambda: stats.get_group_active_users(group_id, days))

    @app.get(base + "/group/{group_id}/inactive_users")
    async def inactive_users(group_id: str, days: float = Query(default=7)):
        return await safe_route(lambda: stats.get_group_inactive_users(group_id, days))

    # ═══════════════════════════════════════════
    # 维护操作
    # ═══════════════════════════════════════════

    @app.post(base + "/clean")
    async def clean(days: float = Query(default=7)):
        async def _clean():
            return {"deleted": await stats.clean_data(days)}
        return await safe_route(_clean)

    @app.post(base + "/set_period")
    async def set_period(days: int = Query(default=30)):
        async def _set():
            return {"days": await stats.set_stat_period(days)}
        return await safe_route(_set)

    @app.post(base + "/enable")
    async def enable(feature: str = Query(default="")):
        async def _enable():
            await stats.enable_feature(feature)
            return {"feature": feature, "enabled": True}
        return await safe_route(_enable)

    @app.post(base + "/disable")
    async def disable(feature: str = Query(default="")):
        async def _disable():
            await stats.disable_feature(feature)
            return {"feature": feature, "enabled": False}
        return await safe_route(_disable)

    # ─── 定时任务 ───

    @app.get(base + "/group/{group_id}/schedules")
    async def list_schedules(group_id: str):
        return await safe_route(lambda: stats.list_group_schedules(group_id))

    @app.post(base + "/group/{group_id}/schedules")
    async def upsert_schedule(group_id: str, body: ScheduleRequest):
        return await safe_route(
            lambda: stats.upsert_group_schedule(group_id, body.hour, body.minute, body.feature)
        )

    @app.post(base + "/group/{group_id}/schedules/remove")
    async def remove_schedule(group_id: str, body: ScheduleRemoveRequest):
        async def _remove():
            return {"removed": await stats.remove_group_schedule(group_id, body.id)}
        return await safe_route(_remove)

    @app.post(base + "/group/{group_id}/schedules/enable")
    async def toggle_schedule(group_id: str, body: ScheduleToggleRequest):
        async def _toggle():
            return {"updated": await stats.set_group_schedule_enabled(group_id, body.id, body.enabled)}
        return await safe_route(_toggle)

    return app
