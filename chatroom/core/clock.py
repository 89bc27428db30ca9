"""毫秒时间戳工具。"""
from __future__ import annotations

import time


def now_ms() -> int:
    """当前墙钟时间（毫秒）。"""
    return int(time.time() * 1000)
