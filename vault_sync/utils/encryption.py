#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
加密模块
提供路径（key）和文件内容的加密、解密功能

字节格式与 OpenSSL 兼容:
    b"Salted__" + 8字节盐值 + AES-256-CBC(PKCS7) 密文
密钥和 IV 由 PBKDF2-HMAC-SHA256 从密码派生。

key 的两种编码通过魔术前缀区分:
    - base64url（当前格式，可加密可解密）
    - base32（旧格式，仅用于解密）
"""

import os
import re
import base64
import binascii
from typing import Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend


DEFAULT_ITER = 20000
SALT_HEADER = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16

# base32("Salted__") 与 base64url("Salted__") 中不受盐值影响的前缀
MAGIC_ENCRYPTED_PREFIX_BASE32 = "KNQWY5DFMRPV"
MAGIC_ENCRYPTED_PREFIX_BASE64URL = "U2FsdGVkX1"

_INVALID_TEXT_RE = re.compile('[\\ufffd\\x00-\\x08\\x0b\\x0c\\x0e-\\x1f]')


class SyncError(Exception):
    """同步相关错误的基类"""


class DecryptionError(SyncError):
    """解密失败（密码错误或密文格式损坏）"""


class UnexpectedKeyError(SyncError):
    """无法识别的 key 或记录格式"""


def _derive_key_iv(password: str, salt: bytes, rounds: int = DEFAULT_ITER):
    """从密码和盐值派生 AES 密钥和 IV"""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=rounds,
        backend=default_backend()
    )
    derived = kdf.derive(password.encode('utf-8'))
    return derived[:KEY_SIZE], derived[KEY_SIZE:]


def encrypt_bytes(data: bytes, password: str, rounds: int = DEFAULT_ITER,
                  salt: Optional[bytes] = None) -> bytes:
    """
    加密数据

    Args:
        data: 明文数据
        password: 密码
        rounds: PBKDF2 迭代次数
        salt: 8字节盐值，为None时随机生成

    Returns:
        b"Salted__" + 盐值 + 密文
    """
    if salt is None:
        salt = os.urandom(SALT_SIZE)
    if len(salt) != SALT_SIZE:
        raise ValueError(f"盐值长度必须为 {SALT_SIZE} 字节")

    key, iv = _derive_key_iv(password, salt, rounds)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend()).encryptor()
    return SALT_HEADER + salt + encryptor.update(padded) + encryptor.finalize()


def decrypt_bytes(data: bytes, password: str, rounds: int = DEFAULT_ITER) -> bytes:
    """
    解密数据

    Raises:
        DecryptionError: 格式错误或密码错误
    """
    header_size = len(SALT_HEADER) + SALT_SIZE
    if len(data) < header_size or not data.startswith(SALT_HEADER):
        raise DecryptionError("密文缺少 Salted__ 头部")

    body = data[header_size:]
    if not body or len(body) % IV_SIZE != 0:
        raise DecryptionError("密文长度不合法")

    salt = data[len(SALT_HEADER):header_size]
    key, iv = _derive_key_iv(password, salt, rounds)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend()).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("解密失败，密码可能不正确") from e


def _b64url_decode(text: str) -> bytes:
    padded = text + '=' * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode('ascii'))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise DecryptionError(f"无效的 base64url 字符串: {text}") from e


def _b32_decode(text: str) -> bytes:
    padded = text + '=' * (-len(text) % 8)
    try:
        return base64.b32decode(padded.encode('ascii'))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise DecryptionError(f"无效的 base32 字符串: {text}") from e


def encrypt_string_to_base64url(text: str, password: str, rounds: int = DEFAULT_ITER) -> str:
    """加密 key，输出无填充的 base64url 字符串"""
    encrypted = encrypt_bytes(text.encode('utf-8'), password, rounds)
    return base64.urlsafe_b64encode(encrypted).decode('ascii').rstrip('=')


def decrypt_base64url_to_string(text: str, password: str, rounds: int = DEFAULT_ITER) -> str:
    """解密 base64url 格式的 key"""
    plain = decrypt_bytes(_b64url_decode(text), password, rounds)
    # 非法字节会被替换为 U+FFFD，由 is_valid_text 负责拦截
    return plain.decode('utf-8', errors='replace')


def decrypt_base32_to_string(text: str, password: str, rounds: int = DEFAULT_ITER) -> str:
    """解密旧版 base32 格式的 key"""
    plain = decrypt_bytes(_b32_decode(text), password, rounds)
    return plain.decode('utf-8', errors='replace')


def is_encrypted_key(key: str) -> bool:
    """key 是否带有任一加密魔术前缀"""
    return (key.startswith(MAGIC_ENCRYPTED_PREFIX_BASE32)
            or key.startswith(MAGIC_ENCRYPTED_PREFIX_BASE64URL))


def decrypt_string(key: str, password: str, rounds: int = DEFAULT_ITER) -> str:
    """
    按魔术前缀选择编码并解密 key

    Raises:
        UnexpectedKeyError: key 不带任何已知前缀
        DecryptionError: 解密失败
    """
    if key.startswith(MAGIC_ENCRYPTED_PREFIX_BASE32):
        return decrypt_base32_to_string(key, password, rounds)
    if key.startswith(MAGIC_ENCRYPTED_PREFIX_BASE64URL):
        return decrypt_base64url_to_string(key, password, rounds)
    raise UnexpectedKeyError(f"unexpected key={key}")


def is_valid_text(text: Optional[str]) -> bool:
    """
    检查解密结果是否像正常文本

    某些错误密码也能"解密成功"并得到乱码，需要额外检查。
    """
    if text is None:
        return False
    return _INVALID_TEXT_RE.search(text) is None


class EncryptionManager:
    """文件内容加密管理类"""

    def __init__(self, password: str, rounds: int = DEFAULT_ITER):
        """
        初始化加密管理器

        Args:
            password: 密码，不能为空
            rounds: PBKDF2 迭代次数
        """
        if not password:
            raise ValueError("未设置加密密码")
        self.password = password
        self.rounds = rounds

    def encrypt_data(self, data: bytes) -> bytes:
        """加密数据"""
        return encrypt_bytes(data, self.password, self.rounds)

    def decrypt_data(self, encrypted_data: bytes) -> bytes:
        """解密数据"""
        return decrypt_bytes(encrypted_data, self.password, self.rounds)


def main(argv=None):
    """命令行工具入口"""
    import argparse

    parser = argparse.ArgumentParser(description='路径加密工具')
    parser.add_argument('--encrypt', help='加密路径')
    parser.add_argument('--decrypt', help='解密路径')
    parser.add_argument('--password', required=True, help='密码')

    args = parser.parse_args(argv)

    if args.encrypt:
        print(encrypt_string_to_base64url(args.encrypt, args.password))
    elif args.decrypt:
        try:
            result = decrypt_string(args.decrypt, args.password)
        except SyncError as e:
            print(f"解密失败: {e}")
            return 1
        if not is_valid_text(result):
            print("解密失败: 密码不匹配")
            return 1
        print(result)
    else:
        parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
