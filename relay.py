"""
SOCKS5 代理 - 数据转发引擎

在客户端和目标主机之间全双工复制字节，不解析隧道内的任何协议。

- 两个方向并发运行
- 某个方向读到 EOF 后，对另一端执行半关闭（write_eof），另一个方向继续转发
- 两个方向都正常结束时转发成功
- 任一方向出现 I/O 错误时立即放弃另一个方向（取消而非排空），
  并抛出 RelayError；套接字由会话清理时关闭
"""

import asyncio
import logging
from dataclasses import dataclass

from errors import RelayError

logger = logging.getLogger('socks5-proxy-relay')

BUFFER_SIZE = 32768


@dataclass
class RelayStats:
    """转发字节统计"""
    client_to_remote: int = 0
    remote_to_client: int = 0


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                stats: RelayStats, direction: str, initial: bytes = b''):
    """单向复制，直到读到 EOF"""
    if initial:
        writer.write(initial)
        await writer.drain()
        setattr(stats, direction, getattr(stats, direction) + len(initial))

    while True:
        data = await reader.read(BUFFER_SIZE)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        setattr(stats, direction, getattr(stats, direction) + len(data))

    logger.debug(f"{direction} 读到 EOF")
    if writer.can_write_eof():
        try:
            writer.write_eof()
        except OSError as e:
            logger.debug(f"{direction} 半关闭失败: {e}")


async def relay(client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter,
                remote_reader: asyncio.StreamReader, remote_writer: asyncio.StreamWriter,
                initial: bytes = b'') -> RelayStats:
    """
    在客户端和目标之间转发数据

    Args:
        client_reader: 客户端读取器
        client_writer: 客户端写入器
        remote_reader: 目标读取器
        remote_writer: 目标写入器
        initial: 握手或嗅探阶段已读入的客户端字节，首先写入目标

    Returns:
        RelayStats: 两个方向的字节数

    Raises:
        RelayError: 任一方向的 I/O 错误
    """
    stats = RelayStats()
    upstream = asyncio.ensure_future(
        _pipe(client_reader, remote_writer, stats, 'client_to_remote', initial))
    downstream = asyncio.ensure_future(
        _pipe(remote_reader, client_writer, stats, 'remote_to_client'))
    tasks = (upstream, downstream)

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in tasks:
            if task not in done:
                continue
            exc = task.exception()
            if isinstance(exc, OSError):
                direction = 'client_to_remote' if task is upstream else 'remote_to_client'
                raise RelayError(f"{direction} 转发失败: {exc}") from exc
            if exc is not None:
                raise exc
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        # 等待被取消的方向退出，避免任务泄漏
        await asyncio.gather(*tasks, return_exceptions=True)

    return stats
