#!/usr/bin/env python3
"""
SOCKS5 代理服务端

版本: 1.0.0

协议:
1. 方法协商（无认证 / 用户名密码）
2. 用户名密码子协商（RFC 1929，配置了用户时必须认证）
3. CONNECT 请求，建立到目标的 TCP 连接
4. 双向转发数据直到任一端关闭

功能:
- 每个连接一个独立的协程，会话之间不共享可变状态
- 每个连接重新读取用户文件
- 可选的流量嗅探重定向
- TCP_NODELAY 和 TCP 保活调优
"""

import argparse
import asyncio
import itertools
import logging
import sys
from typing import Optional

from config import ProxyConfig, load_config
from errors import ConfigError
from logger import LoggerManager
from session import Socks5Session

logger = logging.getLogger('socks5-proxy-server')


# ============================================================================
# 服务端
# ============================================================================

class Socks5Server:
    """
    SOCKS5 代理服务器

    Attributes:
        config: 不可变的代理配置
        active_sessions: 当前活动的会话数
        total_sessions: 已接受的连接总数
        failed_sessions: 以失败结束的会话数
    """

    def __init__(self, config: ProxyConfig):
        """初始化服务端"""
        self.config = config
        self.active_sessions = 0
        self.total_sessions = 0
        self.failed_sessions = 0
        self._ids = itertools.count(1)
        self._server: Optional[asyncio.AbstractServer] = None

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """处理客户端连接，会话错误不会传播到接受循环"""
        peer = writer.get_extra_info('peername')
        peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        session_id = f"{next(self._ids):06d}"

        self.total_sessions += 1
        self.active_sessions += 1
        logger.info(f"来自 {peer_str} 的连接 (会话 {session_id}, 活动 {self.active_sessions})")

        try:
            session = Socks5Session(reader, writer, self.config, session_id)
            outcome = await session.run()
            if not outcome.succeeded:
                self.failed_sessions += 1
        except Exception:
            self.failed_sessions += 1
            logger.exception(f"会话 {session_id} 出现未处理的错误: {peer_str}")
            writer.close()
        finally:
            self.active_sessions -= 1
            logger.info(f"连接关闭: {peer_str} (会话 {session_id}, 活动 {self.active_sessions})")

    async def start(self):
        """启动服务端，持续接受连接直到进程被终止"""
        self._server = await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port
        )
        addr = self._server.sockets[0].getsockname()
        logger.info(f"SOCKS5 代理运行在 {addr[0]}:{addr[1]}")
        logger.info(f"用户文件: {self.config.users_file}")
        if self.config.keepalive_enabled:
            logger.info(f"TCP 保活: 间隔 {self.config.keepalive_interval}s, "
                        f"探测次数 {self.config.keepalive_count or '系统默认'}")
        if self.config.sniff_enabled:
            logger.warning(f"流量嗅探已启用: 包含 {self.config.sniff_signature!r} 的连接将被重定向到 "
                           f"{self.config.sniff_host}:{self.config.sniff_port}")

        async with self._server:
            await self._server.serve_forever()


def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='SOCKS5 代理服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args(argv)

    manager = LoggerManager()
    manager.initialize(config_file=args.config)
    if args.debug:
        manager.set_level('DEBUG')

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    server = Socks5Server(config)

    try:
        asyncio.run(server.start())
    except OSError as e:
        logger.error(f"无法监听 {config.host}:{config.port}: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("服务端已停止")

    return 0


if __name__ == '__main__':
    sys.exit(main())
