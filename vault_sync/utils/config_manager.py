#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
配置管理模块
处理配置文件读取和验证
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional


PASSWORD_ENV = "VAULT_SYNC_PASSWORD"
STATE_FILE_NAME = ".vault_sync_state.json"


class ConfigManager:
    """配置管理类"""

    def __init__(self, config_path: Optional[str] = None):
        """
        初始化配置管理器

        Args:
            config_path: 配置文件路径，如果为None则使用默认配置
        """
        self.config_path = config_path
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """
        加载配置文件

        文件中缺少的节使用默认值补齐。
        """
        config = self._get_default_config()
        if self.config_path and Path(self.config_path).exists():
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
                print(f"已加载配置文件: {self.config_path}")
            except (json.JSONDecodeError, IOError) as e:
                print(f"加载配置文件失败: {e}")
                print("使用默认配置")
                return config

            for section, values in loaded.items():
                if isinstance(values, dict) and isinstance(config.get(section), dict):
                    config[section].update(values)
                else:
                    config[section] = values
        return config

    def _get_default_config(self) -> Dict[str, Any]:
        """
        获取默认配置

        Returns:
            默认配置字典
        """
        return {
            "vault": {
                "local_dir": "./vault",
                "state_file": None
            },
            "remote": {
                "type": "folder",
                "remote_dir": "./remote"
            },
            "encryption": {
                "password": ""
            },
            "ui": {
                "show_progress": True,
                "progress_style": "bar"
            }
        }

    def get_vault_config(self) -> Dict[str, Any]:
        return self.config.get("vault", {})

    def get_remote_config(self) -> Dict[str, Any]:
        return self.config.get("remote", {})

    def get_progress_config(self) -> Dict[str, Any]:
        """
        获取进度条配置

        Returns:
            进度条配置字典
        """
        return self.config.get("ui", {})

    def get_password(self) -> str:
        """
        获取加密密码

        配置为空时读取环境变量 VAULT_SYNC_PASSWORD。
        """
        password = self.config.get("encryption", {}).get("password") or ""
        return password or os.environ.get(PASSWORD_ENV, "")

    def get_state_file(self) -> str:
        """状态文件路径，未配置时放在库目录下（隐藏文件，不参与同步）"""
        vault_config = self.get_vault_config()
        state_file = vault_config.get("state_file")
        if state_file:
            return state_file
        return str(Path(vault_config.get("local_dir", "./vault")) / STATE_FILE_NAME)

    def validate_config(self) -> bool:
        """
        验证配置有效性

        Returns:
            配置是否有效
        """
        from vault_sync.core.remote import SUPPORTED_SERVICES_TYPE

        for section in ("vault", "remote"):
            if section not in self.config:
                print(f"配置文件缺少必需的节: {section}")
                return False

        if not self.get_vault_config().get("local_dir"):
            print("库配置缺少必需的键: local_dir")
            return False

        remote_config = self.get_remote_config()
        remote_type = remote_config.get("type")
        if remote_type not in SUPPORTED_SERVICES_TYPE:
            print(f"不支持的远程类型: {remote_type}")
            return False
        if remote_type == "folder" and not remote_config.get("remote_dir"):
            print("远程配置缺少必需的键: remote_dir")
            return False

        print("配置文件验证通过")
        return True

    def create_sample_config(self, output_path: str = "config.json") -> bool:
        """把默认配置写到 output_path，已存在的文件不会被覆盖"""
        if Path(output_path).exists():
            print(f"文件已存在，未覆盖: {output_path}")
            return False
        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                json.dump(self._get_default_config(), f, indent=2, ensure_ascii=False)
        except OSError as e:
            print(f"写入示例配置失败: {e}")
            return False
        print(f"示例配置已写入: {output_path}")
        return True
