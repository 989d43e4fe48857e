"""
SOCKS5 代理 - 流量嗅探模块

在解析出目标地址之后、连接目标之前，短暂等待客户端的首批数据，
按文本检查其中是否包含配置的特征字符串（默认 "SSH"）。命中时把目标
重定向到固定的本地服务，忽略客户端请求的地址。

读取到的字节不会丢弃：它们作为待转发数据交给转发引擎，在转发开始时
首先写入目标连接，因此隧道中的字节流保持不变。

嗅探是尽力而为的：超时、无数据、解码问题都回退为使用原始目标，
不会产生错误。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Tuple

from config import ProxyConfig

logger = logging.getLogger('socks5-proxy-sniffer')

SNIFF_READ_SIZE = 4096


@dataclass(frozen=True)
class SniffResult:
    """
    嗅探结果

    Attributes:
        data: 观察到的客户端数据，必须先于后续数据转发给目标
        matched: 是否命中特征字符串
    """
    data: bytes
    matched: bool


def match_signature(data: bytes, signature: str) -> bool:
    """按 UTF-8 尽力解码后检查特征字符串"""
    if not data or not signature:
        return False
    return signature in data.decode('utf-8', errors='replace')


async def sniff(reader: asyncio.StreamReader, pending: bytes, timeout: float,
                signature: str) -> SniffResult:
    """
    检查客户端的首批数据

    Args:
        reader: 客户端读取器
        pending: 握手阶段已经读入但尚未转发的字节
        timeout: 等待数据的时间上限（秒）
        signature: 特征字符串

    Returns:
        SniffResult: pending 非空时直接检查 pending，否则等待最多 timeout 秒
    """
    data = pending
    if not data:
        try:
            data = await asyncio.wait_for(reader.read(SNIFF_READ_SIZE), timeout=timeout)
        except asyncio.TimeoutError:
            data = b''

    return SniffResult(data=data, matched=match_signature(data, signature))


def choose_destination(host: str, port: int, result: SniffResult,
                       config: ProxyConfig) -> Tuple[str, int]:
    """根据嗅探结果返回实际连接的 (主机, 端口)"""
    if result.matched:
        logger.warning(
            f"检测到特征 {config.sniff_signature!r}，目标 {host}:{port} "
            f"被重定向到 {config.sniff_host}:{config.sniff_port}"
        )
        return config.sniff_host, config.sniff_port
    return host, port
