"""
分词与 @ 提取
关键词统计使用 jieba3 切词，再按停用词与最小词长过滤
"""
from __future__ import annotations

import re
from typing import Callable, List, Optional

from .config import ConfigStore

MENTION_PATTERN = re.compile(r"@(\d{5,12})")

_segmenter = None


def _jieba_cut(text: str) -> List[str]:
    global _segmenter
    if _segmenter is None:
        # 词典加载较慢，首次使用时再初始化
        import jieba3
        _segmenter = jieba3.jieba3()
    return _segmenter.cut_text(text)


def extract_mentions(text: str) -> List[str]:
    """提取文本中所有 @QQ号（5-12 位数字），按出现顺序返回"""
    if not text:
        return []
    return MENTION_PATTERN.findall(text)


class Tokenizer:
    """按当前配置快照过滤分词结果；停用词/最小词长的修改下一次调用即生效"""

    def __init__(self, config: ConfigStore, cut: Optional[Callable[[str], List[str]]] = None):
        self.config = config
        self._cut = cut or _jieba_cut

    def tokenize(self, text: str) -> List[str]:
        if not text:
            return []
        kw = self.config.current.keyword
        stop_words = set(kw.stop_words)
        words = []
        for w in self._cut(text):
            w = w.strip()
            if w and len(w) >= kw.min_word_length and w not in stop_words:
                words.append(w)
        return words
