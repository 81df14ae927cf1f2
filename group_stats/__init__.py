"""group-stats — 群聊事件采集、统计分析与定时推送"""

__version__ = "0.1.0"
