"""
消息发送模块
通过 OneBot v11 HTTP API 向群/私聊发送文本消息，并查询机器人所在的群列表
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import ConfigStore

logger = logging.getLogger("group-stats.sender")


class OneBotSender:
    """OneBot HTTP 发送器；失败只返回 False，不在这里重试"""

    def __init__(self, config: ConfigStore, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        # 测试时可注入带 MockTransport 的 client
        self._client = client

    async def send_group_message(self, group_id: str, message: str) -> bool:
        return await self._call("send_group_msg", {"group_id": str(group_id), "message": message})

    async def send_private_message(self, user_id: str, message: str) -> bool:
        return await self._call("send_private_msg", {"user_id": str(user_id), "message": message})

    async def get_group_list(self) -> Optional[List[dict]]:
        """调用 get_group_list；失败返回 None"""
        data = await self._request("get_group_list", {})
        if data is None:
            return None
        groups = data.get("data")
        return groups if isinstance(groups, list) else []

    async def _call(self, action: str, payload: Dict[str, Any]) -> bool:
        return await self._request(action, payload) is not None

    async def _request(self, action: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """POST 到 OneBot 动作接口，成功时返回完整响应体，失败记录日志并返回 None"""
        cfg = self.config.current.onebot
        if not cfg.api_url:
            logger.warning(f"⚠️ 未配置 onebot.api_url，跳过 {action}")
            return None

        url = f"{cfg.api_url.rstrip('/')}/{action}"
        headers = {}
        if cfg.access_token:
            headers["Authorization"] = f"Bearer {cfg.access_token}"

        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=headers, timeout=cfg.timeout)
            else:
                async with httpx.AsyncClient(timeout=cfg.timeout) as client:
                    resp = await client.post(url, json=payload, headers=headers)
            if resp.status_code != 200:
                logger.error(f"❌ {action} 失败 HTTP {resp.status_code}: {resp.text[:200]}")
                return None
            data = resp.json()
            if not isinstance(data, dict):
                logger.error(f"❌ {action} 返回格式异常: {resp.text[:200]}")
                return None
            if data.get("status") != "ok":
                logger.error(f"❌ {action} 失败: retcode={data.get('retcode')} {data.get('message') or data.get('wording') or ''}")
                return None
            return data
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"❌ {action} 异常: {e}")
            return None
