"""
本地库与远程存储双向同步工具包
"""

__version__ = "1.0.0"
__author__ = "Vault Sync Team"
__description__ = "Bidirectional vault synchronization with optional end-to-end encryption"

from vault_sync.core.sync_core import Decision, SyncPlan, UnifiedState, get_sync_plan
from vault_sync.core.client import SyncClient, do_actual_sync

__all__ = ['Decision', 'SyncPlan', 'UnifiedState', 'get_sync_plan', 'SyncClient', 'do_actual_sync']
