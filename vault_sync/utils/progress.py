#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
进度显示模块
按同步计划条目显示执行进度

支持的样式:
- bar: tqdm 进度条
- text: 每个条目打印一行
- silent: 不输出
"""

import os
import sys
import time
import shutil
from typing import Optional

from tqdm import tqdm


class Colors:
    """终端颜色"""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    GREEN = '\033[92m'

    @staticmethod
    def supports_color() -> bool:
        """检测终端是否支持颜色"""
        if os.environ.get('NO_COLOR'):
            return False
        if os.environ.get('FORCE_COLOR'):
            return True
        if not hasattr(sys.stdout, 'isatty'):
            return False
        return sys.stdout.isatty()


# 各动作的显示图标
DECISION_ICONS = {
    "skip": "·",
    "download": "⬇",
    "download_clearhist": "⬇",
    "upload": "⬆",
    "upload_clearhist": "⬆",
    "delremote_clearhist": "✗",
    "clearhist": "○",
}


def format_time(seconds: float) -> str:
    """格式化时间"""
    if seconds < 0:
        return "--:--"
    if seconds < 60:
        return f"{int(seconds)}s"
    elif seconds < 3600:
        m, s = divmod(int(seconds), 60)
        return f"{m}m{s:02d}s"
    else:
        h, remainder = divmod(int(seconds), 3600)
        m, s = divmod(remainder, 60)
        return f"{h}h{m:02d}m"


def get_terminal_width() -> int:
    """获取终端宽度"""
    try:
        return shutil.get_terminal_size().columns
    except OSError:
        return 80


def shorten(text: str, width: int = 25) -> str:
    """截断过长的路径"""
    if len(text) > width:
        return "..." + text[-(width - 3):]
    return text


class SyncProgress:
    """
    同步进度显示

    实例可直接作为执行器的进度回调: callback(index, total, key, decision)
    """

    def __init__(self, show_progress: bool = True, style: str = "bar"):
        """
        Args:
            show_progress: 是否显示进度
            style: 进度样式 ('bar', 'text', 'silent')
        """
        self.show_progress = show_progress
        self.style = style
        self.pbar: Optional[tqdm] = None
        self.items_done = 0
        self.total_items = 0
        self.start_time = None

    @property
    def enabled(self) -> bool:
        return self.show_progress and self.style != "silent"

    def __call__(self, index: int, total: int, key: str, decision):
        decision_value = getattr(decision, 'value', decision)

        if self.start_time is None:
            self.start_time = time.time()
        self.total_items = total
        # 回调在执行条目之前调用，之前的条目都已完成
        self.items_done = index - 1

        if not self.enabled:
            return

        if self.style == "bar":
            if self.pbar is None:
                self.pbar = tqdm(
                    total=total,
                    desc="同步进度",
                    unit="项",
                    ncols=min(100, get_terminal_width() - 5),
                    leave=True,
                    colour='cyan'
                )
            self.pbar.n = index - 1
            self.pbar.set_postfix_str(f"{DECISION_ICONS.get(decision_value, '?')} {shorten(key)}")
        else:
            icon = DECISION_ICONS.get(decision_value, "?")
            print(f"  [{index}/{total}] {icon} {decision_value:<20} {key}")

    def finish(self, success: bool = True):
        """结束进度显示并打印总结"""
        if success:
            self.items_done = self.total_items

        if self.pbar is not None:
            self.pbar.n = self.items_done
            self.pbar.refresh()
            self.pbar.close()
            self.pbar = None

        if not self.enabled or self.start_time is None:
            return

        elapsed = time.time() - self.start_time
        if success:
            if Colors.supports_color():
                print(f"{Colors.GREEN}{Colors.BOLD}✓ 同步完成{Colors.RESET} "
                      f"| {self.items_done}/{self.total_items} 项 | {format_time(elapsed)}")
            else:
                print(f"[OK] 同步完成 | {self.items_done}/{self.total_items} 项 | {format_time(elapsed)}")
        else:
            print(f"[X] 同步中断 | 已完成 {self.items_done}/{self.total_items} 项 | {format_time(elapsed)}")


def create_progress_manager(config: dict) -> SyncProgress:
    """
    根据配置创建进度显示

    Args:
        config: 进度配置字典
    """
    show_progress = config.get("show_progress", True)
    style = config.get("progress_style", "bar")

    return SyncProgress(show_progress, style)
