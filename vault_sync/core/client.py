#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
同步客户端
执行同步计划，并驱动一次完整的同步流程

执行顺序按 key 长度从长到短，保证嵌套路径先于其父目录处理；
条目逐个串行执行，任一条目失败即中止，已完成的条目不回滚。
"""

import argparse
import json
import logging
import sys
from typing import Callable, Dict, List, Optional, Set

from vault_sync.core.sync_core import (
    Decision,
    PasswordCheckResult,
    SyncPlan,
    SyncStatus,
    UnifiedState,
    UnknownDecisionError,
    get_sync_plan,
    is_password_ok,
)
from vault_sync.core.remote import FolderRemote, RemoteClient
from vault_sync.utils.config_manager import ConfigManager
from vault_sync.utils.encryption import SyncError, encrypt_string_to_base64url
from vault_sync.utils.local_vault import LocalFile, LocalVault
from vault_sync.utils.progress import create_progress_manager
from vault_sync.utils.state_db import InternalDB, now_ms

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[int, int, str, Decision], None]


class PasswordCheckError(SyncError):
    """同步前的密码检查未通过"""

    def __init__(self, result: PasswordCheckResult):
        super().__init__(f"密码检查未通过: {result.reason.value}")
        self.result = result


def _skip_empty_unencrypted_file(state: UnifiedState, password: str) -> bool:
    # OneDrive 不接受空文件上传；空目录和加密内容照常上传
    return (
        state.size_local == 0
        and not state.key.endswith('/')
        and password == ""
        and state.decision in (Decision.UPLOAD, Decision.UPLOAD_CLEARHIST)
    )


# 后端特有的跳过规则: service_type -> predicate(state, password)
BACKEND_SKIP_POLICIES: Dict[str, Callable[[UnifiedState, str], bool]] = {
    "onedrive": _skip_empty_unencrypted_file,
}


def dispatch_operation_to_actual(
    key: str,
    vault_random_id: str,
    state: UnifiedState,
    client: RemoteClient,
    db: InternalDB,
    vault: LocalVault,
    password: str = "",
    folders_created_before: Optional[Set[str]] = None
):
    """
    执行单个条目的同步动作

    Raises:
        UnknownDecisionError: 条目没有有效的决策
    """
    remote_encrypted_key = key
    if password != "":
        # 复用列表中已有的密文 key，重新加密得到的密文每次都不同
        remote_encrypted_key = state.remote_encrypted_key
        if not remote_encrypted_key:
            remote_encrypted_key = encrypt_string_to_base64url(key, password)

    decision = state.decision
    skip_policy = BACKEND_SKIP_POLICIES.get(client.service_type)

    if decision is None or not decision.is_productive:
        raise UnknownDecisionError(f"unknown decision in {state.to_json()}", state)
    elif decision == Decision.SKIP:
        pass
    elif skip_policy is not None and skip_policy(state, password):
        logger.debug("skip empty file %s uploading for %s", state.key, client.service_type)
    elif decision in (Decision.DOWNLOAD, Decision.DOWNLOAD_CLEARHIST):
        vault.mkdirp_in_vault(state.key)
        client.download_from_remote(
            state.key,
            vault,
            state.mtime_remote,
            password,
            remote_encrypted_key
        )
        if decision == Decision.DOWNLOAD_CLEARHIST:
            db.clear_delete_rename_history_of_key_and_vault(state.key, vault_random_id)
    elif decision in (Decision.UPLOAD, Decision.UPLOAD_CLEARHIST):
        remote_obj_meta = client.upload_to_remote(
            state.key,
            vault,
            False,
            password,
            remote_encrypted_key,
            folders_created_before
        )
        db.upsert_sync_meta_mapping_data_by_vault(
            client.service_type,
            state.key,
            state.mtime_local,
            state.size_local,
            state.key,
            remote_obj_meta.last_modified,
            remote_obj_meta.size,
            remote_obj_meta.etag,
            vault_random_id
        )
        if decision == Decision.UPLOAD_CLEARHIST:
            db.clear_delete_rename_history_of_key_and_vault(state.key, vault_random_id)
    elif decision == Decision.DELREMOTE_CLEARHIST:
        client.delete_from_remote(state.key, password, remote_encrypted_key)
        db.clear_delete_rename_history_of_key_and_vault(state.key, vault_random_id)
    elif decision == Decision.CLEARHIST:
        db.clear_delete_rename_history_of_key_and_vault(state.key, vault_random_id)
    else:
        raise UnknownDecisionError(f"unhandled decision in {state.to_json()}", state)


def do_actual_sync(
    client: RemoteClient,
    db: InternalDB,
    vault_random_id: str,
    vault: LocalVault,
    sync_plan: SyncPlan,
    password: str = "",
    callback_sync_process: Optional[ProgressCallback] = None
):
    """
    按计划执行同步

    Args:
        client: 远程客户端
        db: 状态数据库
        vault_random_id: 库ID
        vault: 本地库
        sync_plan: 已决策的同步计划
        password: 密码
        callback_sync_process: 每个条目执行前调用 (序号, 总数, key, 动作)
    """
    key_states = sync_plan.mixed_states
    folders_created_before: Set[str] = set()
    total_count = len(key_states)

    ordered = sorted(key_states.items(), key=lambda kv: len(kv[0]), reverse=True)
    for i, (key, state) in enumerate(ordered, 1):
        logger.debug("start syncing %r with plan %s", key, state.to_json())
        if callback_sync_process is not None:
            callback_sync_process(i, total_count, key, state.decision)
        dispatch_operation_to_actual(
            key,
            vault_random_id,
            state,
            client,
            db,
            vault,
            password,
            folders_created_before
        )
        logger.info("finished %s", key)


class SyncClient:
    """同步客户端类"""

    def __init__(self, vault: LocalVault, remote: RemoteClient, db: InternalDB,
                 password: str = "",
                 progress_callback: Optional[ProgressCallback] = None,
                 status_callback: Optional[Callable[[SyncStatus], None]] = None):
        """
        初始化客户端

        Args:
            vault: 本地库
            remote: 远程客户端
            db: 状态数据库
            password: 密码，空字符串表示不加密
            progress_callback: 执行进度回调
            status_callback: 同步阶段变化回调
        """
        self.vault = vault
        self.remote = remote
        self.db = db
        self.password = password
        self.progress_callback = progress_callback
        self.status_callback = status_callback
        self.status = SyncStatus.IDLE

    @classmethod
    def from_config(cls, config_manager: ConfigManager,
                    progress_callback: Optional[ProgressCallback] = None) -> 'SyncClient':
        """根据配置创建客户端"""
        vault_config = config_manager.get_vault_config()
        vault = LocalVault(vault_config.get("local_dir", "./vault"))
        vault.base_dir.mkdir(parents=True, exist_ok=True)

        remote = create_remote(config_manager.get_remote_config())
        db = InternalDB(config_manager.get_state_file())
        return cls(vault, remote, db, config_manager.get_password(), progress_callback)

    @property
    def vault_random_id(self) -> str:
        return self.db.vault_random_id

    def _set_status(self, status: SyncStatus):
        self.status = status
        logger.debug("sync status: %s", status.value)
        if self.status_callback is not None:
            self.status_callback(status)

    def check_password(self) -> PasswordCheckResult:
        """只检查密码，不生成计划"""
        return is_password_ok(self.remote.list_from_remote(), self.password)

    def sync(self, dry_run: bool = False) -> SyncPlan:
        """
        执行一次完整同步

        Args:
            dry_run: 为True时只生成计划，不执行也不修改状态库

        Returns:
            本次生成的同步计划

        Raises:
            PasswordCheckError: 密码与远程加密状态不一致
        """
        try:
            self._set_status(SyncStatus.PREPARING)

            self._set_status(SyncStatus.GETTING_REMOTE_META)
            remote_items = self.remote.list_from_remote()

            self._set_status(SyncStatus.GETTING_LOCAL_META)
            local_entries = self.vault.get_all_loaded_files()
            if dry_run:
                pending = {r.key: r for r in self.db.load_delete_rename_history_by_vault(self.vault_random_id)}
                for record in self.db.find_local_deletions(local_entries, self.vault_random_id):
                    pending.setdefault(record.key, record)
                delete_history = list(pending.values())
            else:
                self.db.record_local_deletions(local_entries, self.vault_random_id)
                delete_history = self.db.load_delete_rename_history_by_vault(self.vault_random_id)

            self._set_status(SyncStatus.CHECKING_PASSWORD)
            check = is_password_ok(remote_items, self.password)
            if not check.ok:
                raise PasswordCheckError(check)

            self._set_status(SyncStatus.GENERATING_PLAN)
            plan = get_sync_plan(
                remote_items,
                local_entries,
                delete_history,
                self.db,
                self.vault_random_id,
                self.remote.service_type,
                self.password
            )

            if not dry_run:
                self._set_status(SyncStatus.SYNCING)
                do_actual_sync(
                    self.remote,
                    self.db,
                    self.vault_random_id,
                    self.vault,
                    plan,
                    self.password,
                    self.progress_callback
                )
                # 先取时间再扫描，快照时间不晚于其后发生的任何删除
                taken_at = now_ms()
                self.db.update_local_snapshot(self.vault.get_all_loaded_files(), self.vault_random_id, taken_at)

            self._set_status(SyncStatus.FINISH)
            return plan
        finally:
            self._set_status(SyncStatus.IDLE)

    def list_local_files(self) -> List[str]:
        """列出本地文件"""
        return sorted(
            entry.path for entry in self.vault.get_all_loaded_files()
            if isinstance(entry, LocalFile)
        )


def create_remote(remote_config: dict) -> RemoteClient:
    """
    根据配置创建远程客户端

    Raises:
        ValueError: 远程类型不受支持
    """
    remote_type = remote_config.get("type", "folder")
    if remote_type == "folder":
        return FolderRemote(remote_config.get("remote_dir", "./remote"))
    raise ValueError(f"暂不支持的远程类型: {remote_type}")


def print_plan_summary(plan: SyncPlan):
    """打印计划概要"""
    print("\n同步计划:")
    counts = plan.count_by_decision()
    for decision in Decision:
        if decision.value in counts:
            print(f"  - {decision.value}: {counts[decision.value]}")
    if not counts:
        print("  没有需要处理的条目")


def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='本地库与远程存储双向同步')
    parser.add_argument('--config', '-c', help='配置文件路径')
    parser.add_argument('--mode', choices=['sync', 'check', 'list'],
                        default='sync', help='操作模式')
    parser.add_argument('--local-dir', help='本地库目录（覆盖配置文件）')
    parser.add_argument('--remote-dir', help='远程目录（覆盖配置文件）')
    parser.add_argument('--state-file', help='状态文件（覆盖配置文件）')
    parser.add_argument('--password', help='加密密码（覆盖配置文件）')
    parser.add_argument('--dry-run', action='store_true', help='只生成计划，不执行')
    parser.add_argument('--export-plan', help='把同步计划导出为 JSON 文件')
    parser.add_argument('--init-config', metavar='FILE', help='写出示例配置文件后退出')
    parser.add_argument('--verbose', '-v', action='store_true', help='输出调试日志')

    args = parser.parse_args(argv)

    if args.init_config:
        return 0 if ConfigManager().create_sample_config(args.init_config) else 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # 加载配置
    config_manager = ConfigManager(args.config)

    # 命令行参数覆盖配置文件
    if args.local_dir:
        config_manager.config['vault']['local_dir'] = args.local_dir
    if args.remote_dir:
        config_manager.config['remote']['remote_dir'] = args.remote_dir
    if args.state_file:
        config_manager.config['vault']['state_file'] = args.state_file
    if args.password is not None:
        config_manager.config['encryption']['password'] = args.password

    if not config_manager.validate_config():
        print("配置验证失败，退出")
        return 1

    progress = create_progress_manager(config_manager.get_progress_config())
    try:
        client = SyncClient.from_config(config_manager, progress)
    except (ValueError, OSError) as e:
        print(f"错误: {e}")
        return 1

    if args.mode == 'list':
        files = client.list_local_files()
        print(f"\n本地库目录: {client.vault.base_dir}")
        for file_path in files:
            print(f"  {file_path}")
        if not files:
            print("目录为空")
        return 0

    if args.mode == 'check':
        result = client.check_password()
        print(f"密码检查: {result.reason.value}")
        return 0 if result.ok else 1

    try:
        plan = client.sync(dry_run=args.dry_run)
    except PasswordCheckError as e:
        print(f"\n{e}")
        return 1
    except (SyncError, OSError) as e:
        progress.finish(success=False)
        print(f"\n同步过程中发生错误: {e}")
        return 1

    progress.finish(success=True)
    print_plan_summary(plan)

    if args.export_plan:
        with open(args.export_plan, 'w', encoding='utf-8') as f:
            json.dump(plan.to_dict(), f, indent=2, ensure_ascii=False)
        print(f"\n同步计划已导出到: {args.export_plan}")

    if args.dry_run:
        print("\n(dry run，未执行任何操作)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
