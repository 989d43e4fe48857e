"""
连接管理模块 - 出站连接和套接字调优

本模块负责:
- 建立到目标主机的 TCP 连接（每个会话只尝试一次）
- 为客户端和目标套接字设置 TCP_NODELAY 和 TCP 保活参数
- 关闭流写入器

版本: 1.0.0
"""

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Optional

from config import ProxyConfig
from errors import ConnectError
from socks5_protocol import GENERAL_FAILURE_REPLY

logger = logging.getLogger('socks5-proxy-connection')


# ============================================================================
# 上游连接
# ============================================================================

@dataclass
class Upstream:
    """
    到目标主机的连接

    Attributes:
        host: 实际连接的主机（可能已被嗅探重定向）
        port: 实际连接的端口
        reader: 从目标主机读取数据的异步流读取器
        writer: 向目标主机写入数据的异步流写入器
    """
    host: str
    port: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter


async def connect_to_target(host: str, port: int, timeout: float = 30.0) -> Upstream:
    """
    建立到目标主机的 TCP 连接

    只尝试一次，不做重试或回退。

    Args:
        host: 目标主机名或 IP 地址
        port: 目标端口号
        timeout: 连接超时时间（秒）

    Returns:
        Upstream: 已建立的连接

    Raises:
        ConnectError: 解析失败、连接被拒绝或超时，携带一般失败回复
    """
    logger.debug(f"尝试连接到目标: {host}:{port}")
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        raise ConnectError(f"连接 {host}:{port} 超时（{timeout}s）", GENERAL_FAILURE_REPLY)
    except (OSError, UnicodeError) as e:
        raise ConnectError(f"连接 {host}:{port} 失败: {e}", GENERAL_FAILURE_REPLY)

    logger.debug(f"已连接到目标: {host}:{port}")
    return Upstream(host=host, port=port, reader=reader, writer=writer)


# ============================================================================
# 套接字调优
# ============================================================================

def apply_socket_options(writer: asyncio.StreamWriter, config: ProxyConfig, label: str = 'socket'):
    """
    设置套接字选项

    - 总是启用 TCP_NODELAY
    - keepalive_interval > 0 时启用 SO_KEEPALIVE，并把空闲时间和探测间隔都设为该值
    - 同时 keepalive_count > 0 时设置最大探测次数

    设置失败只记录日志，不中断会话。
    """
    sock: Optional[socket.socket] = writer.get_extra_info('socket')
    if sock is None:
        return

    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except (OSError, OverflowError, TypeError) as e:
        logger.error(f"为 {label} 设置 TCP_NODELAY 失败: {e}")

    if not config.keepalive_enabled:
        return

    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, 'TCP_KEEPIDLE'):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, config.keepalive_interval)
        elif hasattr(socket, 'TCP_KEEPALIVE'):
            # macOS
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, config.keepalive_interval)
        if hasattr(socket, 'TCP_KEEPINTVL'):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, config.keepalive_interval)
        if config.keepalive_count > 0 and hasattr(socket, 'TCP_KEEPCNT'):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPCNT, config.keepalive_count)
    except (OSError, OverflowError, TypeError) as e:
        logger.error(f"为 {label} 设置 TCP 保活失败: {e}")


async def close_writer(writer: Optional[asyncio.StreamWriter]):
    """关闭写入器并等待底层连接关闭，连接已断开时忽略错误"""
    if writer is None:
        return
    try:
        writer.close()
        await writer.wait_closed()
    except (ConnectionResetError, BrokenPipeError, OSError):
        pass  # 连接已断开，忽略错误
