"""异常定义"""


class GroupStatsError(Exception):
    """所有业务异常的基类"""


class StorageInitError(GroupStatsError):
    """数据库无法打开或 schema 初始化失败（致命错误，没有降级模式）"""


class QueryError(GroupStatsError):
    """统计查询参数非法"""
