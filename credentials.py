"""
SOCKS5 代理 - 用户凭据存储

用户文件格式（UTF-8 文本）:
    username:password

- 每行按第一个冒号分割，密码中可以包含冒号
- 不包含冒号的行被忽略
- 不去除空白字符，比较时要求逐字节一致
- 用户名重复时以最后一行为准
- 文件不存在时自动创建空文件，此时代理不要求认证

每个会话开始时重新读取整个文件，不做任何缓存。
"""

import logging
from pathlib import Path
from typing import Dict, Mapping

from cryptography.hazmat.primitives import constant_time

from errors import CredentialStoreError

logger = logging.getLogger('socks5-proxy-credentials')


def load_users(users_file: str) -> Dict[str, str]:
    """
    加载用户凭据

    Args:
        users_file: 用户文件路径

    Returns:
        Dict[str, str]: {用户名: 密码} 字典

    Raises:
        CredentialStoreError: 文件存在但无法读取（权限、磁盘错误、编码错误）
    """
    path = Path(users_file)
    users: Dict[str, str] = {}

    try:
        with open(path, 'r', encoding='utf-8', newline='\n') as f:
            for raw_line in f:
                line = raw_line.rstrip('\n')
                if line.endswith('\r'):
                    line = line[:-1]
                username, sep, password = line.partition(':')
                if not sep:
                    continue
                users[username] = password
    except FileNotFoundError:
        logger.info(f"用户文件 {path} 不存在，创建空文件")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
        except OSError as e:
            raise CredentialStoreError(f"无法创建用户文件 {path}: {e}")
        return {}
    except (OSError, UnicodeDecodeError) as e:
        raise CredentialStoreError(f"无法读取用户文件 {path}: {e}")

    return users


def check_credentials(users: Mapping[str, str], username: str, password: str) -> bool:
    """
    校验用户名和密码

    密码按 UTF-8 字节做常量时间比较，语义上仍是精确相等。
    """
    stored = users.get(username)
    if stored is None:
        return False
    return constant_time.bytes_eq(stored.encode('utf-8'), password.encode('utf-8'))
