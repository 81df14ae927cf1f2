"""
配置管理模块
从 config.yaml 和环境变量加载配置，并以不可变快照的形式在运行时共享
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger("group-stats.config")

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# 加载 .env
load_dotenv(PROJECT_ROOT / ".env")

DEFAULT_STOP_WORDS = ["的", "了", "和", "是", "就", "都", "而", "及", "与", "着", "在"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class FeatureFlags(_Frozen):
    keyword: bool = True
    heatmap: bool = True
    burst: bool = True
    silent: bool = True
    type_stats: bool = True
    user_content: bool = True


class KeywordConfig(_Frozen):
    min_word_length: int = 2
    default_limit: int = 50
    stop_words: List[str] = Field(default_factory=lambda: list(DEFAULT_STOP_WORDS))


class SchedulerConfig(_Frozen):
    enabled: bool = True
    retry_once: bool = True
    scan_interval_seconds: int = 60

    @field_validator("scan_interval_seconds")
    @classmethod
    def _clamp_interval(cls, v: int) -> int:
        return max(10, v)


class BurstConfig(_Frozen):
    window_minutes: int = 5
    lookback_days: int = 7
    sigma: float = 3
    min_messages: int = 20

    @field_validator("window_minutes")
    @classmethod
    def _positive_window(cls, v: int) -> int:
        return max(1, v)


class SilentConfig(_Frozen):
    recent_hours: int = 24
    baseline_days: int = 7
    quantile: float = 0.2

    @field_validator("recent_hours")
    @classmethod
    def _positive_hours(cls, v: int) -> int:
        return max(1, v)

    @field_validator("quantile")
    @classmethod
    def _clamp_quantile(cls, v: float) -> float:
        return min(1.0, max(0.0, v))


class GroupConfig(_Frozen):
    enabled: Optional[bool] = None


class DatabaseConfig(_Frozen):
    path: str = str(PROJECT_ROOT / "data" / "group_stats.db")


class OneBotConfig(_Frozen):
    api_url: str = ""
    access_token: str = ""
    timeout: float = 10.0


class ServerConfig(_Frozen):
    host: str = "0.0.0.0"
    port: int = 8502


class AppConfig(_Frozen):
    enabled: bool = True
    debug: bool = False
    command_prefix: str = "#stats"
    timezone_offset_minutes: int = 480
    collect_private_messages: bool = False
    collect_group_files: bool = False
    store_message_content: bool = True
    stat_period_days: int = 30
    feature_flags: FeatureFlags = Field(default_factory=FeatureFlags)
    keyword: KeywordConfig = Field(default_factory=KeywordConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    burst: BurstConfig = Field(default_factory=BurstConfig)
    silent: SilentConfig = Field(default_factory=SilentConfig)
    group_configs: Dict[str, GroupConfig] = Field(default_factory=dict)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    onebot: OneBotConfig = Field(default_factory=OneBotConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("stat_period_days")
    @classmethod
    def _clamp_period(cls, v: int) -> int:
        return max(1, v)

    def is_group_enabled(self, group_id: str) -> bool:
        cfg = self.group_configs.get(str(group_id))
        return not (cfg is not None and cfg.enabled is False)


def sanitize_config(raw: Any) -> AppConfig:
    """
    将任意字典转为 AppConfig。
    逐字段校验：非法值回落到默认值并记录警告，而不是让整个配置加载失败。
    """
    if not isinstance(raw, dict):
        return AppConfig()
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        cleaned = dict(raw)
        for err in e.errors():
            loc = err.get("loc") or ()
            if not loc:
                continue
            logger.warning(f"⚠️ 配置项 {'.'.join(str(p) for p in loc)} 非法，使用默认值: {err.get('msg')}")
            _drop_path(cleaned, list(loc))
        return AppConfig.model_validate(cleaned)


def _drop_path(data: Dict[str, Any], loc: List[Any]):
    """按 pydantic 的错误位置删除对应键（嵌套字典按需复制）"""
    key = loc[0]
    if key not in data:
        return
    if len(loc) == 1 or not isinstance(data[key], dict):
        data.pop(key, None)
        return
    child = dict(data[key])
    _drop_path(child, loc[1:])
    data[key] = child


def load_config(config_path: Optional[str] = None, allow_missing: bool = False) -> AppConfig:
    """加载配置文件，环境变量优先级更高"""
    if config_path is None:
        path = PROJECT_ROOT / "config.yaml"
    else:
        path = Path(config_path)

    cfg: Dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    elif not allow_missing:
        raise FileNotFoundError(f"配置文件不存在: {path}")

    # 环境变量覆盖
    env_db_path = os.getenv("GROUP_STATS_DB_PATH")
    env_api_url = os.getenv("ONEBOT_API_URL")
    env_token = os.getenv("ONEBOT_ACCESS_TOKEN")
    env_tz = os.getenv("GROUP_STATS_TZ_OFFSET")

    if env_db_path:
        cfg.setdefault("database", {})["path"] = env_db_path
    if env_api_url:
        cfg.setdefault("onebot", {})["api_url"] = env_api_url
    if env_token:
        cfg.setdefault("onebot", {})["access_token"] = env_token
    if env_tz:
        try:
            cfg["timezone_offset_minutes"] = int(env_tz)
        except ValueError:
            logger.warning(f"⚠️ GROUP_STATS_TZ_OFFSET 格式错误，忽略: {env_tz}")

    # 解析数据库路径为绝对路径
    db_path = (cfg.get("database") or {}).get("path")
    if db_path and not Path(db_path).is_absolute():
        cfg["database"]["path"] = str(PROJECT_ROOT / db_path)

    return sanitize_config(cfg)


def validate_config(cfg: AppConfig) -> List[str]:
    """验证配置，返回错误列表"""
    errors = []
    if not cfg.onebot.api_url:
        errors.append("缺少 onebot.api_url（OneBot HTTP API 地址，例如 http://127.0.0.1:3000）")
    if not cfg.command_prefix:
        errors.append("command_prefix 不能为空")
    return errors


# 允许通过 set/patch 接口修改的配置路径（封闭集合）
UPDATABLE_PATHS = {
    "enabled": ("enabled",),
    "debug": ("debug",),
    "command_prefix": ("command_prefix",),
    "timezone_offset_minutes": ("timezone_offset_minutes",),
    "collect_private_messages": ("collect_private_messages",),
    "collect_group_files": ("collect_group_files",),
    "store_message_content": ("store_message_content",),
    "stat_period_days": ("stat_period_days",),
    "scheduler.enabled": ("scheduler", "enabled"),
    "scheduler.retry_once": ("scheduler", "retry_once"),
    "scheduler.scan_interval_seconds": ("scheduler", "scan_interval_seconds"),
    "feature_flags.keyword": ("feature_flags", "keyword"),
    "feature_flags.heatmap": ("feature_flags", "heatmap"),
    "feature_flags.burst": ("feature_flags", "burst"),
    "feature_flags.silent": ("feature_flags", "silent"),
    "feature_flags.type_stats": ("feature_flags", "type_stats"),
    "feature_flags.user_content": ("feature_flags", "user_content"),
    "keyword.min_word_length": ("keyword", "min_word_length"),
    "keyword.default_limit": ("keyword", "default_limit"),
    "burst.window_minutes": ("burst", "window_minutes"),
    "burst.lookback_days": ("burst", "lookback_days"),
    "burst.sigma": ("burst", "sigma"),
    "burst.min_messages": ("burst", "min_messages"),
    "silent.recent_hours": ("silent", "recent_hours"),
    "silent.baseline_days": ("silent", "baseline_days"),
    "silent.quantile": ("silent", "quantile"),
}


class ConfigStore:
    """
    运行时配置持有者。

    current 始终是一个冻结的 AppConfig；所有修改都先构造新快照再整体替换引用，
    读方要么看到修改前的完整配置，要么看到修改后的完整配置。
    """

    def __init__(self, config: Optional[AppConfig] = None):
        self._config = config or AppConfig()

    @property
    def current(self) -> AppConfig:
        return self._config

    def replace(self, config: Any):
        if isinstance(config, AppConfig):
            self._config = config
        else:
            self._config = sanitize_config(config)

    def update(self, **fields: Any) -> AppConfig:
        raw = self._config.model_dump()
        raw.update(fields)
        self._config = sanitize_config(raw)
        return self._config

    def apply_path(self, key: str, value: Any) -> AppConfig:
        """按点号路径修改单个配置项，只接受 UPDATABLE_PATHS 中的键"""
        return self.apply_many({key: value})

    def apply_many(self, patch: Dict[str, Any]) -> AppConfig:
        """
        一次性应用多个点号路径（作为一次替换生效）。
        未知键或校验失败的值会让整个 patch 被拒绝（ValueError），当前快照保持不变。
        """
        raw = self._config.model_dump()
        for key, value in patch.items():
            path = UPDATABLE_PATHS.get(key)
            if path is None:
                raise ValueError(f"不支持修改的配置项: {key}")
            node = raw
            for part in path[:-1]:
                node = node[part]
            node[path[-1]] = value
        try:
            config = AppConfig.model_validate(raw)
        except ValidationError as e:
            bad = ", ".join(
                f"{'.'.join(str(p) for p in err.get('loc') or ())} ({err.get('msg')})" for err in e.errors()
            )
            raise ValueError(f"配置项取值非法: {bad}") from e
        self._config = config
        return self._config

    def get_path(self, key: str) -> Any:
        """按点号路径读取当前值"""
        path = UPDATABLE_PATHS.get(key)
        if path is None:
            raise ValueError(f"不支持读取的配置项: {key}")
        node: Any = self._config
        for part in path:
            node = getattr(node, part)
        return node

    def set_stat_period(self, days: int) -> int:
        days = max(1, int(days))
        self.update(stat_period_days=days)
        return days

    def set_feature_flag(self, name: str, enabled: bool) -> bool:
        """修改已知功能开关；未知名称返回 False 且不改动配置"""
        if name not in FeatureFlags.model_fields:
            return False
        flags = self._config.feature_flags.model_copy(update={name: bool(enabled)})
        self._config = self._config.model_copy(update={"feature_flags": flags})
        return True

    def set_group_enabled(self, group_id: str, enabled: bool):
        groups = dict(self._config.group_configs)
        groups[str(group_id)] = GroupConfig(enabled=bool(enabled))
        self._config = self._config.model_copy(update={"group_configs": groups})

    def is_group_enabled(self, group_id: str) -> bool:
        return self._config.is_group_enabled(group_id)
