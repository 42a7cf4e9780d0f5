#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
本地库（vault）读写工具
扫描本地目录生成文件/目录列表，并提供下载写入所需的读写操作
"""

import hashlib
import os
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional, Union

from vault_sync.utils.encryption import UnexpectedKeyError


ROOT_PATH = "/"


@dataclass
class LocalFile:
    """本地文件"""
    path: str                    # 相对路径，使用正斜杠
    mtime: int                   # 修改时间（毫秒）
    size: int                    # 文件大小


@dataclass
class LocalFolder:
    """本地目录，库根目录的 path 为 "/" """
    path: str


LocalEntry = Union[LocalFile, LocalFolder]


def normalize_path(path: str) -> str:
    """标准化路径分隔符，统一使用正斜杠"""
    return path.replace(os.sep, '/').replace('\\', '/')


def is_hidden_path(key: str, dot: bool = True, underscore: bool = True) -> bool:
    """
    判断路径是否为隐藏路径

    任意一级以 "." 开头（或以 "_" 开头）即视为隐藏。
    """
    for part in normalize_path(key).split('/'):
        if part in ('', '.', '..'):
            continue
        if dot and part.startswith('.'):
            return True
        if underscore and part.startswith('_'):
            return True
    return False


def calculate_file_hash(file_path: Path) -> str:
    """计算文件的MD5 hash值"""
    hash_md5 = hashlib.md5()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            hash_md5.update(chunk)
    return hash_md5.hexdigest()


def mtime_ms(stat_result: os.stat_result) -> int:
    """stat 结果中的修改时间（毫秒）"""
    return stat_result.st_mtime_ns // 1_000_000


class LocalVault:
    """本地库读写类"""

    def __init__(self, base_dir: str):
        """
        初始化本地库

        Args:
            base_dir: 库根目录
        """
        self.base_dir = Path(base_dir).resolve()

    def get_relative_path(self, file_path: Path) -> str:
        """获取相对于库根目录的路径（统一使用正斜杠）"""
        return normalize_path(str(file_path.relative_to(self.base_dir)))

    def full_path(self, key: str) -> Path:
        """
        把 key 解析为库内的绝对路径

        Raises:
            UnexpectedKeyError: key 指向库目录之外
        """
        local_path = (self.base_dir / key.rstrip('/')).resolve()
        if not local_path.is_relative_to(self.base_dir):
            raise UnexpectedKeyError(f"路径越界: {key}")
        return local_path

    def get_all_loaded_files(self) -> List[LocalEntry]:
        """
        扫描库目录

        Returns:
            根目录、所有子目录和文件；隐藏目录不会被遍历
        """
        entries: List[LocalEntry] = [LocalFolder(ROOT_PATH)]

        if not self.base_dir.exists():
            return entries

        for root, dirs, files in os.walk(self.base_dir):
            root_path = Path(root)

            # 跳过隐藏目录
            dirs[:] = sorted(d for d in dirs if not d.startswith('.'))

            for dir_name in dirs:
                entries.append(LocalFolder(self.get_relative_path(root_path / dir_name)))

            for file_name in sorted(files):
                file_path = root_path / file_name
                stat = file_path.stat()
                entries.append(LocalFile(
                    path=self.get_relative_path(file_path),
                    mtime=mtime_ms(stat),
                    size=stat.st_size
                ))

        return entries

    def read_bytes(self, key: str) -> bytes:
        """读取文件内容"""
        return self.full_path(key).read_bytes()

    def write_bytes(self, key: str, data: bytes, mtime: Optional[int] = None):
        """
        写入文件，并把修改时间设为 mtime（毫秒）
        """
        full_path = self.full_path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
        if mtime:
            mtime_ns = mtime * 1_000_000
            os.utime(full_path, ns=(mtime_ns, mtime_ns))

    def mkdirp_in_vault(self, key: str):
        """
        创建 key 所需的各级父目录；目录 key（以 "/" 结尾）本身也会被创建
        """
        full_path = self.full_path(key)
        if key.endswith('/'):
            full_path.mkdir(parents=True, exist_ok=True)
        else:
            full_path.parent.mkdir(parents=True, exist_ok=True)
