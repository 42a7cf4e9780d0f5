#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
同步核心逻辑模块
合并远程列表、本地列表和删除历史，为每个路径决定唯一的同步动作

处理流程:
1. ensemble_mixed_states - 三方信息合并为每个路径一条 UnifiedState
2. get_operation - 按固定的决策表为每条状态选出动作
3. get_sync_plan - 生成带时间戳的同步计划，交给执行器
"""

import json
import logging
import time
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from vault_sync.utils.encryption import (
    DecryptionError,
    SyncError,
    UnexpectedKeyError,
    decrypt_string,
    is_encrypted_key,
    is_valid_text,
)
from vault_sync.utils.local_vault import LocalFile, LocalFolder, ROOT_PATH, is_hidden_path
from vault_sync.utils.state_db import KEY_TYPE_FILE, KEY_TYPE_FOLDER

logger = logging.getLogger(__name__)


class UnknownDecisionError(SyncError):
    """决策表无法覆盖的状态，说明合并结果有误"""

    def __init__(self, message: str, state: Optional['UnifiedState'] = None):
        super().__init__(message)
        self.state = state


class SyncStatus(Enum):
    """一次同步所处的阶段"""
    IDLE = "idle"
    PREPARING = "preparing"
    GETTING_REMOTE_META = "getting_remote_meta"
    GETTING_LOCAL_META = "getting_local_meta"
    CHECKING_PASSWORD = "checking_password"
    GENERATING_PLAN = "generating_plan"
    SYNCING = "syncing"
    FINISH = "finish"


class Decision(Enum):
    """同步动作类型"""
    UNDECIDED = "undecided"
    UNKNOWN = "unknown"
    SKIP = "skip"
    DOWNLOAD = "download"
    DOWNLOAD_CLEARHIST = "download_clearhist"
    UPLOAD = "upload"
    UPLOAD_CLEARHIST = "upload_clearhist"
    DELREMOTE_CLEARHIST = "delremote_clearhist"
    CLEARHIST = "clearhist"

    @property
    def is_productive(self) -> bool:
        return self not in (Decision.UNDECIDED, Decision.UNKNOWN)


@dataclass
class RemoteItem:
    """远程列表中的一个对象"""
    key: str                     # 远程保存的 key（可能已加密）
    last_modified: Optional[int] # 修改时间（毫秒）
    size: Optional[int]
    etag: Optional[str] = None


@dataclass
class UnifiedState:
    """单个路径合并后的状态"""
    key: str
    exist_local: bool = False
    exist_remote: bool = False
    mtime_local: Optional[int] = None
    mtime_remote: Optional[int] = None
    size_local: Optional[int] = None
    size_remote: Optional[int] = None
    delete_time_local: Optional[int] = None
    remote_encrypted_key: Optional[str] = None
    decision: Decision = Decision.UNDECIDED
    decision_branch: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data['decision'] = self.decision.value
        return {k: v for k, v in data.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)


@dataclass(frozen=True)
class SyncPlan:
    """同步计划，生成后不再修改，由执行器消费一次"""
    ts: int
    remote_type: str
    mixed_states: Dict[str, UnifiedState] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ts': self.ts,
            'remote_type': self.remote_type,
            'mixed_states': {k: v.to_dict() for k, v in self.mixed_states.items()}
        }

    def count_by_decision(self) -> Dict[str, int]:
        """按动作统计条目数"""
        counts: Dict[str, int] = {}
        for state in self.mixed_states.values():
            counts[state.decision.value] = counts.get(state.decision.value, 0) + 1
        return counts


class PasswordCheckReason(Enum):
    """密码检查结果原因"""
    EMPTY_REMOTE = "empty_remote"
    REMOTE_ENCRYPTED_LOCAL_NO_PASSWORD = "remote_encrypted_local_no_password"
    PASSWORD_MATCHED = "password_matched"
    PASSWORD_NOT_MATCHED = "password_not_matched"
    INVALID_TEXT_AFTER_DECRYPTION = "invalid_text_after_decryption"
    REMOTE_NOT_ENCRYPTED_LOCAL_HAS_PASSWORD = "remote_not_encrypted_local_has_password"
    NO_PASSWORD_BOTH_SIDES = "no_password_both_sides"


@dataclass
class PasswordCheckResult:
    ok: bool
    reason: PasswordCheckReason


def is_password_ok(remote: Optional[List[RemoteItem]], password: str = "") -> PasswordCheckResult:
    """
    用远程列表的第一个 key 检查密码是否与远程加密状态一致

    只是预检，完整合并时遇到无法识别的 key 仍会报错。
    """
    if not remote:
        return PasswordCheckResult(True, PasswordCheckReason.EMPTY_REMOTE)

    sanity_check_key = remote[0].key
    if not is_encrypted_key(sanity_check_key):
        # 远程未加密
        if password != "":
            return PasswordCheckResult(False, PasswordCheckReason.REMOTE_NOT_ENCRYPTED_LOCAL_HAS_PASSWORD)
        return PasswordCheckResult(True, PasswordCheckReason.NO_PASSWORD_BOTH_SIDES)

    if password == "":
        return PasswordCheckResult(False, PasswordCheckReason.REMOTE_ENCRYPTED_LOCAL_NO_PASSWORD)

    try:
        res = decrypt_string(sanity_check_key, password)
    except DecryptionError:
        return PasswordCheckResult(False, PasswordCheckReason.PASSWORD_NOT_MATCHED)

    # 错误的密码有时也能"解密成功"，只得到乱码
    if is_valid_text(res):
        return PasswordCheckResult(True, PasswordCheckReason.PASSWORD_MATCHED)
    return PasswordCheckResult(False, PasswordCheckReason.INVALID_TEXT_AFTER_DECRYPTION)


def _get_or_create(results: Dict[str, UnifiedState], key: str) -> UnifiedState:
    state = results.get(key)
    if state is None:
        state = UnifiedState(key=key)
        results[key] = state
    return state


def ensemble_mixed_states(
    remote: Optional[List[RemoteItem]],
    local: List[Any],
    delete_history: List[Any],
    db: Any,
    vault_random_id: str,
    remote_type: str,
    password: str = ""
) -> Dict[str, UnifiedState]:
    """
    合并远程列表、本地列表和删除历史

    依次处理远程、本地、删除历史；每一方只填写属于自己的字段。

    Args:
        remote: 远程对象列表
        local: 本地文件/目录列表（含根目录）
        delete_history: 删除/重命名记录
        db: 提供 get_sync_meta_mapping_by_remote_key_and_vault 的状态库
        vault_random_id: 库ID
        remote_type: 远程后端类型
        password: 密码，空字符串表示不加密

    Raises:
        UnexpectedKeyError: 遇到无法识别的 key 或记录
        DecryptionError: 密码错误
    """
    results: Dict[str, UnifiedState] = {}

    for entry in remote or []:
        remote_encrypted_key = entry.key
        key = remote_encrypted_key
        if password != "":
            key = decrypt_string(remote_encrypted_key, password)

        backward_mapping = db.get_sync_meta_mapping_by_remote_key_and_vault(
            remote_type,
            key,
            entry.last_modified,
            entry.etag,
            vault_random_id
        )

        mtime_remote = entry.last_modified
        size_remote = entry.size
        if backward_mapping is not None:
            key = backward_mapping.local_key
            mtime_remote = backward_mapping.local_mtime or entry.last_modified
            size_remote = backward_mapping.local_size or entry.size

        if is_hidden_path(key):
            continue

        state = _get_or_create(results, key)
        state.exist_remote = True
        state.mtime_remote = mtime_remote
        state.size_remote = size_remote
        state.remote_encrypted_key = remote_encrypted_key

    for entry in local:
        if isinstance(entry, LocalFolder):
            if entry.path == ROOT_PATH:
                continue
            key = entry.path if entry.path.endswith('/') else f"{entry.path}/"
            mtime_local = None
            size_local = 0
        elif isinstance(entry, LocalFile):
            key = entry.path
            mtime_local = entry.mtime
            size_local = entry.size
        else:
            raise UnexpectedKeyError(f"unexpected local entry {entry!r}")

        if is_hidden_path(key):
            continue

        state = _get_or_create(results, key)
        state.exist_local = True
        state.mtime_local = mtime_local
        state.size_local = size_local

    for entry in delete_history:
        key = entry.key
        if entry.key_type == KEY_TYPE_FOLDER:
            if not key.endswith('/'):
                key = f"{key}/"
        elif entry.key_type != KEY_TYPE_FILE:
            raise UnexpectedKeyError(f"unexpected history record {entry!r}")

        if is_hidden_path(key):
            continue

        state = _get_or_create(results, key)
        state.delete_time_local = entry.action_when

    logger.debug("ensembled %d states from %d remote, %d local, %d history records",
                 len(results), len(remote or []), len(local), len(delete_history))
    return results


def get_operation(orig_record: UnifiedState, password: str = "",
                  inplace: bool = False) -> UnifiedState:
    """
    按决策表为一条状态选出同步动作

    规则按顺序匹配，第一条命中即生效。没有规则命中时抛出异常，
    不会返回 unknown。

    Args:
        orig_record: 合并后的状态
        password: 密码，非空时不比较文件大小
        inplace: 为True时直接修改传入的对象

    Returns:
        填写了 decision 和 decision_branch 的状态
    """
    r = orig_record if inplace else dataclasses.replace(orig_record)

    if r.mtime_local == 0:
        r.mtime_local = None
    if r.mtime_remote == 0:
        r.mtime_remote = None
    if r.delete_time_local == 0:
        r.delete_time_local = None
    r.exist_local = bool(r.exist_local)
    r.exist_remote = bool(r.exist_remote)
    r.decision = Decision.UNKNOWN
    r.decision_branch = None

    both_exist = r.exist_remote and r.exist_local
    both_mtimes = r.mtime_remote is not None and r.mtime_local is not None

    if both_exist and both_mtimes and r.mtime_remote > r.mtime_local:
        r.decision, r.decision_branch = Decision.DOWNLOAD_CLEARHIST, 1
    elif both_exist and both_mtimes and r.mtime_remote < r.mtime_local:
        r.decision, r.decision_branch = Decision.UPLOAD_CLEARHIST, 2
    elif both_exist and both_mtimes and password == "" and r.size_local == r.size_remote:
        r.decision, r.decision_branch = Decision.SKIP, 3
    elif both_exist and both_mtimes and password == "":
        r.decision, r.decision_branch = Decision.UPLOAD_CLEARHIST, 4
    elif both_exist and both_mtimes:
        # 加密后大小总是不同，只有修改时间可靠
        r.decision, r.decision_branch = Decision.SKIP, 5
    elif both_exist and r.mtime_local is None:
        # 只能是目录
        if not r.key.endswith('/'):
            raise UnknownDecisionError(f"{r.key} is not a folder but lacks local mtime", r)
        r.decision, r.decision_branch = Decision.SKIP, 6
    elif (r.exist_remote and not r.exist_local
          and r.mtime_remote is not None and r.mtime_local is None):
        if r.delete_time_local is None:
            r.decision, r.decision_branch = Decision.DOWNLOAD, 9
        elif r.mtime_remote >= r.delete_time_local:
            r.decision, r.decision_branch = Decision.DOWNLOAD_CLEARHIST, 7
        else:
            r.decision, r.decision_branch = Decision.DELREMOTE_CLEARHIST, 8
    elif not r.exist_remote and r.exist_local and r.mtime_remote is None:
        r.decision, r.decision_branch = Decision.UPLOAD_CLEARHIST, 10
    elif (not r.exist_remote and not r.exist_local
          and r.mtime_remote is None and r.mtime_local is None):
        r.decision, r.decision_branch = Decision.CLEARHIST, 11

    if r.decision == Decision.UNKNOWN:
        raise UnknownDecisionError(f"unknown decision for {r.to_json()}", r)

    return r


def get_sync_plan(
    remote: Optional[List[RemoteItem]],
    local: List[Any],
    delete_history: List[Any],
    db: Any,
    vault_random_id: str,
    remote_type: str,
    password: str = ""
) -> SyncPlan:
    """
    生成同步计划

    只做计算，除元数据映射查询外不访问远程或本地存储。
    """
    mixed_states = ensemble_mixed_states(
        remote, local, delete_history, db,
        vault_random_id, remote_type, password
    )
    for state in mixed_states.values():
        get_operation(state, password, inplace=True)

    return SyncPlan(
        ts=int(time.time() * 1000),
        remote_type=remote_type,
        mixed_states=mixed_states
    )
