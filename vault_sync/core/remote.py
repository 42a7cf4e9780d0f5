#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
远程存储客户端
定义执行器使用的远程接口，并提供以本地目录模拟对象存储的实现

目录后端的存储方式:
- 未加密: key 原样映射为目录中的相对路径，目录 key（以 "/" 结尾）对应子目录
- 加密: key 加密后作为根目录下的文件名，文件内容同样加密；
  目录 key 保存为内容为空（加密后）的对象；密文 key 超过 MAX_NAME_BYTES
  （明文路径约 165 字节以上）时无法保存，抛出 UnexpectedKeyError
"""

import logging
import os
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional, Set

from vault_sync.core.sync_core import RemoteItem
from vault_sync.utils.encryption import EncryptionManager, UnexpectedKeyError
from vault_sync.utils.local_vault import (
    LocalVault,
    calculate_file_hash,
    mtime_ms,
    normalize_path,
)

logger = logging.getLogger(__name__)


SUPPORTED_SERVICES_TYPE = ("s3", "webdav", "dropbox", "onedrive", "folder")

# 常见文件系统的单个文件名上限（字节）；加密模式下整个密文 key 就是一个文件名
MAX_NAME_BYTES = 255


@dataclass
class RemoteObjectMeta:
    """上传后远程对象的元数据"""
    key: str
    last_modified: Optional[int]
    size: Optional[int]
    etag: Optional[str] = None


class RemoteClient:
    """远程存储接口"""

    service_type = ""

    def list_from_remote(self) -> List[RemoteItem]:
        raise NotImplementedError

    def upload_to_remote(self, key: str, vault: LocalVault, is_recursively: bool = False,
                         password: str = "", remote_encrypted_key: str = "",
                         folders_created_before: Optional[Set[str]] = None) -> RemoteObjectMeta:
        raise NotImplementedError

    def download_from_remote(self, key: str, vault: LocalVault, mtime: Optional[int],
                             password: str = "", remote_encrypted_key: str = ""):
        raise NotImplementedError

    def delete_from_remote(self, key: str, password: str = "", remote_encrypted_key: str = ""):
        raise NotImplementedError


class FolderRemote(RemoteClient):
    """以本地目录模拟的远程对象存储"""

    service_type = "folder"

    def __init__(self, remote_dir: str):
        """
        初始化目录后端

        Args:
            remote_dir: 作为远程存储的目录
        """
        self.remote_dir = Path(remote_dir).resolve()
        self.remote_dir.mkdir(parents=True, exist_ok=True)

    def _object_path(self, key: str, password: str, remote_encrypted_key: str) -> Path:
        """计算 key 对应的存储位置"""
        name = remote_encrypted_key if password != "" else key
        if not name:
            raise UnexpectedKeyError(f"缺少加密后的远程 key: {key}")
        if password != "" and len(name.encode('utf-8')) > MAX_NAME_BYTES:
            raise UnexpectedKeyError(
                f"加密后的 key 长度 {len(name)} 超过文件名上限 {MAX_NAME_BYTES}，目录后端无法保存: {key}"
            )
        target = (self.remote_dir / name.rstrip('/')).resolve()
        if target == self.remote_dir or not target.is_relative_to(self.remote_dir):
            raise UnexpectedKeyError(f"路径越界: {name}")
        return target

    def _meta_of(self, key: str, target: Path) -> RemoteObjectMeta:
        stat = target.stat()
        if target.is_dir():
            return RemoteObjectMeta(key=key, last_modified=mtime_ms(stat), size=0, etag="")
        return RemoteObjectMeta(
            key=key,
            last_modified=mtime_ms(stat),
            size=stat.st_size,
            etag=calculate_file_hash(target)
        )

    def list_from_remote(self) -> List[RemoteItem]:
        """
        列出所有远程对象

        Returns:
            按 key 排序的对象列表，目录 key 以 "/" 结尾
        """
        items = []
        for root, dirs, files in os.walk(self.remote_dir):
            root_path = Path(root)
            dirs.sort()
            for dir_name in dirs:
                dir_path = root_path / dir_name
                rel = normalize_path(str(dir_path.relative_to(self.remote_dir)))
                meta = self._meta_of(rel + '/', dir_path)
                items.append(RemoteItem(meta.key, meta.last_modified, meta.size, meta.etag))
            for file_name in files:
                file_path = root_path / file_name
                rel = normalize_path(str(file_path.relative_to(self.remote_dir)))
                meta = self._meta_of(rel, file_path)
                items.append(RemoteItem(meta.key, meta.last_modified, meta.size, meta.etag))
        items.sort(key=lambda item: item.key)
        return items

    def _mkdirp_remote(self, key: str, folders_created_before: Set[str]):
        """逐级创建未加密 key 的父目录，已创建过的目录不再重复创建"""
        parts = key.rstrip('/').split('/')
        levels = parts if key.endswith('/') else parts[:-1]
        current = ""
        for part in levels:
            current = f"{current}{part}/"
            if current in folders_created_before:
                continue
            (self.remote_dir / current).mkdir(exist_ok=True)
            folders_created_before.add(current)

    def upload_to_remote(self, key: str, vault: LocalVault, is_recursively: bool = False,
                         password: str = "", remote_encrypted_key: str = "",
                         folders_created_before: Optional[Set[str]] = None) -> RemoteObjectMeta:
        """
        上传文件或目录

        Returns:
            上传后远程对象的元数据
        """
        if folders_created_before is None:
            folders_created_before = set()
        target = self._object_path(key, password, remote_encrypted_key)

        if password == "":
            self._mkdirp_remote(key, folders_created_before)
            if key.endswith('/'):
                return self._meta_of(key, target)
            target.write_bytes(vault.read_bytes(key))
            return self._meta_of(key, target)

        manager = EncryptionManager(password)
        data = b"" if key.endswith('/') else vault.read_bytes(key)
        target.write_bytes(manager.encrypt_data(data))
        return self._meta_of(remote_encrypted_key, target)

    def download_from_remote(self, key: str, vault: LocalVault, mtime: Optional[int],
                             password: str = "", remote_encrypted_key: str = ""):
        """
        下载文件到本地库，并把本地修改时间设为 mtime
        """
        if key.endswith('/'):
            vault.mkdirp_in_vault(key)
            return

        source = self._object_path(key, password, remote_encrypted_key)
        data = source.read_bytes()
        if password != "":
            data = EncryptionManager(password).decrypt_data(data)
        vault.write_bytes(key, data, mtime)

    def delete_from_remote(self, key: str, password: str = "", remote_encrypted_key: str = ""):
        """
        删除远程对象

        未加密的目录只在为空时删除，其中仍有的对象不受影响。
        """
        target = self._object_path(key, password, remote_encrypted_key)
        if not target.exists():
            return
        if target.is_dir():
            if any(target.iterdir()):
                logger.debug("remote folder %s is not empty, keep it", key)
                return
            target.rmdir()
        else:
            target.unlink()
