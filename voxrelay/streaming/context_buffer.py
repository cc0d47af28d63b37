# coding=utf-8
from __future__ import annotations

from collections import deque
from typing import Deque, List


def join_context(sentences: List[str]) -> str:
    return " ".join(s for s in sentences if s)


def truncate_context(sentences: List[str], max_chars: int) -> str:
    """
    Join sentences into one context string of at most ``max_chars`` characters.

    Whole sentences are dropped oldest first. If the newest sentence alone is
    longer than the budget, only its tail is kept.
    """
    budget = max(0, int(max_chars))
    if budget <= 0:
        return ""
    kept: List[str] = []
    used = 0
    for sentence in reversed([s for s in sentences if s]):
        extra = len(sentence) + (1 if kept else 0)
        if used + extra > budget:
            if not kept:
                return sentence[-budget:]
            break
        kept.append(sentence)
        used += extra
    kept.reverse()
    return join_context(kept)


class ContextBuffer:
    """
    Rolling window of recent final sentences, bounded by rendered length.
    """

    def __init__(self, max_chars: int = 2000) -> None:
        self.max_chars = max(1, int(max_chars))
        self._items: Deque[str] = deque()
        self._chars = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def total_chars(self) -> int:
        return self._chars

    def _rendered_len(self) -> int:
        if not self._items:
            return 0
        return self._chars + len(self._items) - 1

    def append(self, sentence: str) -> None:
        text = str(sentence or "").strip()
        if not text:
            return
        self._items.append(text)
        self._chars += len(text)
        while self._items and self._rendered_len() > self.max_chars:
            dropped = self._items.popleft()
            self._chars -= len(dropped)

    def clear(self) -> None:
        self._items.clear()
        self._chars = 0

    def sentences(self) -> List[str]:
        return list(self._items)

    def render(self) -> str:
        return join_context(list(self._items))
