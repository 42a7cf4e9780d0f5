#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
本地状态数据库
保存同步元数据映射（meta-mapping）、删除/重命名历史（tombstone）和上次扫描的本地快照

所有数据保存在一个 JSON 文件中，每次修改后立即写盘，
单个条目的更新彼此独立，中断后重新执行同步是安全的。
"""

import json
import time
import uuid
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from vault_sync.utils.local_vault import LocalEntry, LocalFile, LocalFolder, ROOT_PATH, is_hidden_path


KEY_TYPE_FILE = "file"
KEY_TYPE_FOLDER = "folder"


@dataclass
class SyncMetaMapping:
    """本地文件与远程对象元数据的对应关系"""
    local_key: str
    local_mtime: Optional[int]
    local_size: Optional[int]
    remote_key: str
    remote_mtime: Optional[int]
    remote_size: Optional[int]
    remote_etag: Optional[str]
    remote_type: str
    vault_random_id: str

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'SyncMetaMapping':
        return cls(**data)


@dataclass
class DeleteHistoryRecord:
    """本地删除/重命名记录"""
    key: str
    key_type: str                # file / folder
    action_when: int             # 删除时间（毫秒）

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'DeleteHistoryRecord':
        return cls(
            key=data['key'],
            key_type=data.get('key_type', KEY_TYPE_FILE),
            action_when=data.get('action_when', 0)
        )


def now_ms() -> int:
    """当前时间（毫秒）"""
    return int(time.time() * 1000)


class InternalDB:
    """基于 JSON 文件的状态数据库"""

    def __init__(self, state_file: str, vault_random_id: Optional[str] = None):
        """
        初始化状态数据库

        Args:
            state_file: 状态文件路径
            vault_random_id: 库的唯一标识，为None时沿用文件中的值或重新生成
        """
        self.state_file = Path(state_file).resolve()

        self.sync_mapping: Dict[str, Dict] = {}
        self.delete_rename_history: Dict[str, Dict] = {}
        self.local_snapshot: Dict[str, Dict[str, str]] = {}
        self.snapshot_time: Dict[str, int] = {}
        stored_vault_id = self._load_state()

        self.vault_random_id = vault_random_id or stored_vault_id or self._generate_vault_id()

    def _generate_vault_id(self) -> str:
        """生成唯一库ID"""
        return str(uuid.uuid4())[:8]

    def _load_state(self) -> Optional[str]:
        """加载状态文件，返回其中记录的库ID"""
        if not self.state_file.exists():
            return None

        with open(self.state_file, 'r', encoding='utf-8') as f:
            data = json.load(f)

        self.sync_mapping = data.get('sync_mapping', {})
        self.delete_rename_history = data.get('delete_rename_history', {})
        self.local_snapshot = data.get('local_snapshot', {})
        self.snapshot_time = data.get('snapshot_time', {})
        return data.get('vault_random_id')

    def save_state(self):
        """保存状态到文件"""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        data = {
            'vault_random_id': self.vault_random_id,
            'sync_mapping': self.sync_mapping,
            'delete_rename_history': self.delete_rename_history,
            'local_snapshot': self.local_snapshot,
            'snapshot_time': self.snapshot_time
        }
        tmp_file = self.state_file.with_name(self.state_file.name + '.tmp')
        with open(tmp_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp_file.replace(self.state_file)

    # ========== 元数据映射 ==========

    @staticmethod
    def _mapping_id(remote_type: str, remote_key: str, vault_random_id: str) -> str:
        return f"{vault_random_id}\t{remote_type}\t{remote_key}"

    def get_sync_meta_mapping_by_remote_key_and_vault(
        self,
        remote_type: str,
        remote_key: str,
        remote_mtime: Optional[int],
        remote_etag: Optional[str],
        vault_random_id: str
    ) -> Optional[SyncMetaMapping]:
        """
        按远程 key 查找映射

        只有远程修改时间和 etag 都与记录一致时才返回，
        否则说明远程对象在上次上传之后已被改动。
        """
        data = self.sync_mapping.get(self._mapping_id(remote_type, remote_key, vault_random_id))
        if data is None:
            return None
        if data.get('remote_mtime') != remote_mtime or data.get('remote_etag') != remote_etag:
            return None
        return SyncMetaMapping.from_dict(data)

    def upsert_sync_meta_mapping_data_by_vault(
        self,
        remote_type: str,
        local_key: str,
        local_mtime: Optional[int],
        local_size: Optional[int],
        remote_key: str,
        remote_mtime: Optional[int],
        remote_size: Optional[int],
        remote_etag: Optional[str],
        vault_random_id: str
    ):
        """插入或更新映射"""
        mapping = SyncMetaMapping(
            local_key=local_key,
            local_mtime=local_mtime,
            local_size=local_size,
            remote_key=remote_key,
            remote_mtime=remote_mtime,
            remote_size=remote_size,
            remote_etag=remote_etag,
            remote_type=remote_type,
            vault_random_id=vault_random_id
        )
        self.sync_mapping[self._mapping_id(remote_type, remote_key, vault_random_id)] = mapping.to_dict()
        self.save_state()

    # ========== 删除/重命名历史 ==========

    @staticmethod
    def _history_id(key: str, vault_random_id: str) -> str:
        return f"{vault_random_id}\t{key}"

    def insert_delete_record_by_vault(self, record: DeleteHistoryRecord, vault_random_id: str):
        """记录一次本地删除（同一路径保留最新一次）"""
        self.delete_rename_history[self._history_id(record.key, vault_random_id)] = record.to_dict()
        self.save_state()

    def load_delete_rename_history_by_vault(self, vault_random_id: str) -> List[DeleteHistoryRecord]:
        """读取某个库的全部删除记录"""
        prefix = f"{vault_random_id}\t"
        return [
            DeleteHistoryRecord.from_dict(v)
            for k, v in sorted(self.delete_rename_history.items())
            if k.startswith(prefix)
        ]

    def clear_delete_rename_history_of_key_and_vault(self, key: str, vault_random_id: str):
        """
        清除某个路径的删除记录

        目录记录可能以带或不带 "/" 的形式保存，两种都会被清除。
        """
        candidates = {key, key.rstrip('/'), key.rstrip('/') + '/'}
        changed = False
        for k in candidates:
            if self.delete_rename_history.pop(self._history_id(k, vault_random_id), None) is not None:
                changed = True
        if changed:
            self.save_state()

    # ========== 本地快照 ==========

    @staticmethod
    def _snapshot_of(entries: List[LocalEntry]) -> Dict[str, str]:
        # 隐藏路径不参与同步，也不产生删除记录
        snapshot = {}
        for entry in entries:
            if is_hidden_path(entry.path):
                continue
            if isinstance(entry, LocalFile):
                snapshot[entry.path] = KEY_TYPE_FILE
            elif isinstance(entry, LocalFolder) and entry.path != ROOT_PATH:
                snapshot[entry.path] = KEY_TYPE_FOLDER
        return snapshot

    def find_local_deletions(
        self,
        entries: List[LocalEntry],
        vault_random_id: str,
        action_when: Optional[int] = None
    ) -> List[DeleteHistoryRecord]:
        """
        对比上次快照和当前扫描结果，找出消失的路径（不写盘）

        删除时间取上次快照的时间，即删除可能发生的最早时刻；
        之后在远程被修改过的文件会按规则重新下载，而不是被删除。
        """
        previous = self.local_snapshot.get(vault_random_id, {})
        current = self._snapshot_of(entries)
        when = action_when or self.snapshot_time.get(vault_random_id) or now_ms()

        return [
            DeleteHistoryRecord(key=path, key_type=key_type, action_when=when)
            for path, key_type in sorted(previous.items())
            if path not in current
        ]

    def record_local_deletions(
        self,
        entries: List[LocalEntry],
        vault_random_id: str,
        action_when: Optional[int] = None
    ) -> List[DeleteHistoryRecord]:
        """
        为上次快照之后消失的路径创建删除记录

        Returns:
            新增的删除记录
        """
        created = [
            record
            for record in self.find_local_deletions(entries, vault_random_id, action_when)
            if self._history_id(record.key, vault_random_id) not in self.delete_rename_history
        ]
        for record in created:
            self.insert_delete_record_by_vault(record, vault_random_id)
        return created

    def update_local_snapshot(self, entries: List[LocalEntry], vault_random_id: str,
                              taken_at: Optional[int] = None):
        """同步完成后保存当前本地快照及其时间（毫秒）"""
        self.local_snapshot[vault_random_id] = self._snapshot_of(entries)
        self.snapshot_time[vault_random_id] = taken_at or now_ms()
        self.save_state()
