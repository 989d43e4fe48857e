"""
SOCKS5 代理 - 配置管理模块

版本: 1.0.0

功能概述:
本模块在进程启动时构建一次不可变的代理配置，并显式传递给服务器
和每一个会话。会话逻辑中不再读取任何环境变量。

配置来源（优先级从低到高）:
1. ProxyConfig 数据类默认值
2. YAML 配置文件的 proxy 段（可选）
3. 环境变量

支持的环境变量:
- SOCKS5_HOST: 监听地址（默认: 0.0.0.0）
- SOCKS5_PORT: 监听端口（默认: 1080）
- SOCKS5_USERS_FILE: 用户文件路径
- KEEPALIVE_INTERVAL: TCP 保活探测间隔（秒，1-32767），大于 0 时启用
- KEEPALIVE_COUNT_MAX: TCP 保活最大探测次数（1-127），大于 0 时生效
- SOCKS5_CONNECT_TIMEOUT: 连接目标的超时时间（秒）
- SOCKS5_SNIFF_ENABLED / SOCKS5_SNIFF_SIGNATURE / SOCKS5_SNIFF_HOST /
  SOCKS5_SNIFF_PORT / SOCKS5_SNIFF_TIMEOUT: 流量嗅探重定向
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import yaml

from errors import ConfigError

logger = logging.getLogger('socks5-proxy-config')

DEFAULT_USERS_FILE = '/etc/rusty_socks_proxy/users.txt'

# Linux 内核接受的上限（TCP_KEEPIDLE/TCP_KEEPINTVL 和 TCP_KEEPCNT）
MAX_KEEPALIVE_INTERVAL = 32767
MAX_KEEPALIVE_COUNT = 127


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass(frozen=True)
class ProxyConfig:
    """
    代理配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        port: 监听端口（默认: 1080）
        users_file: 用户文件路径，每行一个 username:password
        keepalive_interval: TCP 保活探测间隔（秒），0 表示禁用
        keepalive_count: TCP 保活最大探测次数，0 表示使用系统默认值
        connect_timeout: 连接目标主机的超时时间（秒）
        sniff_enabled: 是否启用流量嗅探重定向（默认: False）
        sniff_signature: 触发重定向的文本特征
        sniff_host: 重定向目标主机
        sniff_port: 重定向目标端口
        sniff_timeout: 等待客户端首批数据的时间上限（秒）
    """
    host: str = '0.0.0.0'
    port: int = 1080
    users_file: str = DEFAULT_USERS_FILE
    keepalive_interval: int = 0
    keepalive_count: int = 0
    connect_timeout: float = 30.0
    sniff_enabled: bool = False
    sniff_signature: str = 'SSH'
    sniff_host: str = '127.0.0.1'
    sniff_port: int = 22
    sniff_timeout: float = 1.0

    @property
    def keepalive_enabled(self) -> bool:
        return self.keepalive_interval > 0


# ============================================================================
# 值解析
# ============================================================================

def _parse_port(value: Any, name: str) -> int:
    """解析端口号，非法值抛出 ConfigError"""
    try:
        port = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} 必须是有效的端口号: {value!r}")
    if not 0 <= port <= 65535:
        raise ConfigError(f"{name} 超出端口范围 0-65535: {port}")
    return port


def _parse_non_negative_int(value: Any, name: str, maximum: int) -> int:
    """解析 0..maximum 的整数，无法解析或越界时回退为 0"""
    try:
        number = int(str(value).strip())
    except ValueError:
        logger.warning(f"{name} 无法解析为整数: {value!r}，使用 0")
        return 0
    if number < 0:
        logger.warning(f"{name} 不能为负数: {number}，使用 0")
        return 0
    if number > maximum:
        logger.warning(f"{name} 超出上限 {maximum}: {number}，使用 0")
        return 0
    return number


def _parse_seconds(value: Any, name: str, default: float) -> float:
    try:
        seconds = float(str(value).strip())
    except ValueError:
        logger.warning(f"{name} 无法解析为秒数: {value!r}，使用默认值 {default}")
        return default
    if seconds <= 0:
        logger.warning(f"{name} 必须大于 0: {seconds}，使用默认值 {default}")
        return default
    return seconds


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config_file(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"配置文件 {config_file} 顶层必须是映射，已忽略")
        return {}
    return data


# (环境变量, YAML 键)
_ENV_KEYS = (
    ('SOCKS5_HOST', 'host'),
    ('SOCKS5_PORT', 'port'),
    ('SOCKS5_USERS_FILE', 'users_file'),
    ('KEEPALIVE_INTERVAL', 'keepalive_interval'),
    ('KEEPALIVE_COUNT_MAX', 'keepalive_count'),
    ('SOCKS5_CONNECT_TIMEOUT', 'connect_timeout'),
    ('SOCKS5_SNIFF_ENABLED', 'sniff_enabled'),
    ('SOCKS5_SNIFF_SIGNATURE', 'sniff_signature'),
    ('SOCKS5_SNIFF_HOST', 'sniff_host'),
    ('SOCKS5_SNIFF_PORT', 'sniff_port'),
    ('SOCKS5_SNIFF_TIMEOUT', 'sniff_timeout'),
)


def load_config(config_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """
    构建代理配置

    Args:
        config_file: YAML 配置文件路径（可选）
        environ: 环境变量映射（默认: os.environ）

    Returns:
        ProxyConfig: 不可变的代理配置

    Raises:
        ConfigError: 端口号无效
    """
    if environ is None:
        environ = os.environ

    raw: Dict[str, Any] = {}
    if config_file:
        file_data = load_config_file(config_file)
        section = file_data.get('proxy') or {}
        if not isinstance(section, dict):
            raise ConfigError(f"配置文件 {config_file} 的 proxy 段必须是映射")
        raw.update(section)

    for env_name, key in _ENV_KEYS:
        if env_name in environ:
            raw[key] = environ[env_name]

    defaults = ProxyConfig()
    config = ProxyConfig(
        host=str(raw.get('host', defaults.host)),
        port=_parse_port(raw.get('port', defaults.port), 'SOCKS5_PORT'),
        users_file=str(raw.get('users_file', defaults.users_file)),
        keepalive_interval=_parse_non_negative_int(
            raw.get('keepalive_interval', defaults.keepalive_interval), 'KEEPALIVE_INTERVAL',
            MAX_KEEPALIVE_INTERVAL),
        keepalive_count=_parse_non_negative_int(
            raw.get('keepalive_count', defaults.keepalive_count), 'KEEPALIVE_COUNT_MAX',
            MAX_KEEPALIVE_COUNT),
        connect_timeout=_parse_seconds(
            raw.get('connect_timeout', defaults.connect_timeout),
            'SOCKS5_CONNECT_TIMEOUT', defaults.connect_timeout),
        sniff_enabled=_parse_bool(raw.get('sniff_enabled', defaults.sniff_enabled)),
        sniff_signature=str(raw.get('sniff_signature', defaults.sniff_signature)),
        sniff_host=str(raw.get('sniff_host', defaults.sniff_host)),
        sniff_port=_parse_port(raw.get('sniff_port', defaults.sniff_port), 'SOCKS5_SNIFF_PORT'),
        sniff_timeout=_parse_seconds(
            raw.get('sniff_timeout', defaults.sniff_timeout),
            'SOCKS5_SNIFF_TIMEOUT', defaults.sniff_timeout),
    )

    if config.keepalive_count and not config.keepalive_enabled:
        logger.warning("KEEPALIVE_COUNT_MAX 仅在 KEEPALIVE_INTERVAL 大于 0 时生效")

    return config
